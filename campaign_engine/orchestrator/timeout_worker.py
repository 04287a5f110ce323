# campaign_engine/orchestrator/timeout_worker.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from campaign_engine.common.errors import InvalidPayloadError
from campaign_engine.common.events import CLICKED_EVENT, is_timeout_class, positive_counterpart
from campaign_engine.common.metrics import TRANSITIONS
from campaign_engine.common.timeutil import Clock, utcnow
from campaign_engine.data.models import CampaignInstance
from campaign_engine.data.store import CampaignStore
from campaign_engine.orchestrator.interpreter import PlanInterpreter, Reason, TransitionResult
from campaign_engine.orchestrator.payloads import TimeoutJobPayload

log = logging.getLogger("outreach.timeout")


class TimeoutReconciler:
    """
    Decides whether a due timeout still means anything.

    1. the real counterpart event (open for no_open, click for no_click) wins
    2. for no_click, an out-of-band calendar click since node entry counts as a click
    3. otherwise the synthetic timeout transition fires

    Timers are never cancelled; a timer that lost its race ends here as a no-op.
    """

    def __init__(self, store: CampaignStore, interpreter: PlanInterpreter, clock: Clock = utcnow) -> None:
        self._store = store
        self._interpreter = interpreter
        self._clock = clock

    async def process(self, raw_payload: Dict[str, Any], job_id: Optional[str] = None) -> Dict[str, Any]:
        payload = TimeoutJobPayload.from_wire(raw_payload)
        if not is_timeout_class(payload.event_type):
            raise InvalidPayloadError(f"{payload.event_type!r} is not a timeout event")

        context = {
            "tenant_id": payload.tenant_id,
            "campaign_id": payload.campaign_id,
            "node_id": payload.node_id,
            "message_id": payload.message_id,
            "event_type": payload.event_type,
            "job_id": job_id,
        }
        try:
            real_type = positive_counterpart(payload.event_type)
            real = await self._store.find_message_event(payload.tenant_id, payload.message_id, real_type)
            if real is not None:
                log.info(
                    "Skipping %s: %s already recorded for message %s at %s", payload.event_type,
                    real_type, payload.message_id, real.timestamp.isoformat(), extra=context,
                )
                return self._skip(payload, Reason.REAL_EVENT_EXISTS)

            instance = await self._store.get_instance(payload.tenant_id, payload.campaign_id)
            if instance is None:
                log.warning("Timeout for unknown campaign %s", payload.campaign_id, extra=context)
                return self._skip(payload, Reason.MISSING_CAMPAIGN_DATA)

            if payload.event_type == "no_click":
                clicked = await self._calendar_click_transition(instance, payload, context)
                if clicked is not None:
                    return clicked

            result = await self._interpreter.process_timeout_transition(
                tenant_id=payload.tenant_id,
                campaign_id=payload.campaign_id,
                contact_id=payload.contact_id or instance.contact_id,
                lead_id=payload.lead_id or instance.lead_id,
                timeout_event_type=payload.event_type,
                current_node_id=payload.node_id,
                original_job_id=job_id,
                scheduled_at=payload.scheduled_at,
                message_id=payload.message_id,
            )
            return result.to_dict()
        except Exception as exc:
            log.error("Timeout processing failed: %s", exc, extra=context, exc_info=True)
            raise

    async def _calendar_click_transition(
        self, instance: CampaignInstance, payload: TimeoutJobPayload, context: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        try:
            node_start = await self._interpreter.get_current_node_start_time(
                payload.tenant_id, payload.campaign_id, payload.node_id
            )
            if node_start is None:
                return None
            clicks = await self._store.find_calendar_clicks(
                payload.tenant_id,
                payload.campaign_id,
                payload.contact_id or instance.contact_id,
                payload.lead_id or instance.lead_id,
                since=node_start,
                until=self._clock(),
            )
        except Exception as exc:
            log.warning("Calendar click check failed, treating as no click: %s", exc, extra=context)
            return None

        if not clicks:
            return None

        log.info("Found %d calendar click(s) since node entry; treating %s as clicked", len(clicks),
                 payload.event_type, extra=context)
        result = await self._interpreter.process_transition(
            tenant_id=payload.tenant_id,
            campaign_id=payload.campaign_id,
            contact_id=payload.contact_id or instance.contact_id,
            lead_id=payload.lead_id or instance.lead_id,
            event_type=CLICKED_EVENT,
            current_node_id=payload.node_id,
            event_ref=clicks[0].id,
            message_id=payload.message_id,
        )
        if not result.success:
            return None
        TRANSITIONS.labels(Reason.CALENDAR_CLICK_FOUND).inc()
        out = result.to_dict()
        out["reason"] = Reason.CALENDAR_CLICK_FOUND
        return out

    def _skip(self, payload: TimeoutJobPayload, reason: str) -> Dict[str, Any]:
        TRANSITIONS.labels(reason).inc()
        return TransitionResult(success=False, from_node_id=payload.node_id, reason=reason).to_dict()
