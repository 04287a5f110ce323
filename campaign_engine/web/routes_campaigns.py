# campaign_engine/web/routes_campaigns.py

import logging

from fastapi import APIRouter, HTTPException, Request

from campaign_engine.common.errors import InvalidPayloadError, PlanValidationError
from campaign_engine.web.schemas import CalendarClickIn, CampaignStartIn, CampaignStopIn, MessageEventIn

router = APIRouter()
logger = logging.getLogger("outreach.web")


def _runtime(request: Request):
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None or not runtime.ready:
        raise HTTPException(status_code=503, detail="engine not ready")
    return runtime


# --------------------------------------------------------------------------
# Campaign lifecycle
# --------------------------------------------------------------------------
@router.post("/campaigns", status_code=201)
async def start_campaign(body: CampaignStartIn, request: Request):
    runtime = _runtime(request)
    try:
        result = await runtime.interpreter.initialize_campaign(
            tenant_id=body.tenant_id,
            campaign_id=body.campaign_id,
            contact_id=body.contact_id,
            lead_id=body.lead_id,
            channel=body.channel,
            plan=body.plan,
        )
    except PlanValidationError as e:
        raise HTTPException(status_code=422, detail={"error": e.code, "problems": e.problems})
    except InvalidPayloadError as e:
        raise HTTPException(status_code=409, detail={"error": e.code, "message": str(e)})
    return result.to_dict()


@router.get("/campaigns/{tenant_id}/{campaign_id}")
async def campaign_status(tenant_id: str, campaign_id: str, request: Request):
    status = await _runtime(request).interpreter.get_execution_status(tenant_id, campaign_id)
    if status is None:
        raise HTTPException(status_code=404, detail="campaign not found")
    return status


@router.post("/campaigns/{tenant_id}/{campaign_id}/stop")
async def stop_campaign(tenant_id: str, campaign_id: str, request: Request, body: CampaignStopIn | None = None):
    reason = body.reason if body else "stopped_by_operator"
    stopped = await _runtime(request).interpreter.stop_campaign(tenant_id, campaign_id, reason)
    return {"stopped": stopped}


# --------------------------------------------------------------------------
# Inbound events
# --------------------------------------------------------------------------
@router.post("/events/message")
async def ingest_message_event(body: MessageEventIn, request: Request):
    runtime = _runtime(request)
    cache = request.app.state.idempotency
    key = body.idempotency_key()
    if not await cache.reserve(key):
        logger.info("Duplicate event delivery ignored: %s", key)
        return {"status": "duplicate"}
    try:
        result = await runtime.ingestor.ingest_message_event(
            tenant_id=body.tenant_id,
            message_id=body.message_id,
            event_type=body.event_type,
            timestamp=body.timestamp,
            payload=body.payload,
        )
    except Exception:
        await cache.release(key)
        raise
    return {"status": "accepted", "result": result.to_dict()}


@router.post("/signals/calendar-click")
async def ingest_calendar_click(body: CalendarClickIn, request: Request):
    click = await _runtime(request).ingestor.record_calendar_click(
        tenant_id=body.tenant_id,
        campaign_id=body.campaign_id,
        contact_id=body.contact_id,
        node_id=body.node_id,
        lead_id=body.lead_id,
        timestamp=body.timestamp,
    )
    return {"status": "recorded", "id": click.id}
