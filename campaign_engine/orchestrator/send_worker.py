# campaign_engine/orchestrator/send_worker.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from campaign_engine.common.timeutil import Clock, utcnow
from campaign_engine.data.models import InstanceStatus, OutboundMessage
from campaign_engine.data.store import CampaignStore
from campaign_engine.orchestrator.interpreter import PlanInterpreter, Reason
from campaign_engine.orchestrator.payloads import SendJobPayload

log = logging.getLogger("outreach.send")


@dataclass
class SendRequest:
    tenant_id: str
    campaign_id: str
    contact_id: str
    lead_id: Optional[str]
    node_id: str
    channel: str
    dedupe_key: str
    content: Dict[str, Any] = field(default_factory=dict)


class MessageDispatcher(Protocol):
    """Content composition and delivery live outside the engine; this is the seam."""

    async def dispatch(self, request: SendRequest) -> str:
        """Deliver the message and return the provider-side message id."""
        ...


class LoggingDispatcher:
    """Dev-mode dispatcher: logs the send and returns a stub message id."""

    async def dispatch(self, request: SendRequest) -> str:
        message_id = f"dev-{request.channel}-{uuid.uuid4()}"
        log.warning(
            "[DEV] Simulated %s send for campaign=%s node=%s -> %s",
            request.channel, request.campaign_id, request.node_id, message_id,
        )
        return message_id


def dedupe_key_for(payload: SendJobPayload, contact_id: str) -> str:
    return f"{payload.tenant_id}:{payload.campaign_id}:{contact_id}:{payload.node_id}:{payload.channel}"


class SendActionService:
    """
    Handles a due `send` action: hands the node's message to the dispatcher,
    records the outbound message, then arms the node's timeout timers measured
    from the send time so each timer knows which message it is waiting on.
    """

    def __init__(
        self,
        store: CampaignStore,
        interpreter: PlanInterpreter,
        dispatcher: MessageDispatcher,
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._interpreter = interpreter
        self._dispatcher = dispatcher
        self._clock = clock

    async def process(self, raw_payload: Dict[str, Any]) -> Dict[str, Any]:
        payload = SendJobPayload.from_wire(raw_payload)
        context = {
            "tenant_id": payload.tenant_id,
            "campaign_id": payload.campaign_id,
            "node_id": payload.node_id,
        }

        instance = await self._store.get_instance(payload.tenant_id, payload.campaign_id)
        if instance is None:
            log.warning("Send skipped: campaign %s not found", payload.campaign_id, extra=context)
            return {"success": False, "reason": Reason.MISSING_CAMPAIGN_DATA}
        if instance.status != InstanceStatus.ACTIVE or instance.current_node_id != payload.node_id:
            log.info(
                "Send skipped: campaign %s is at %s (%s), not %s", payload.campaign_id,
                instance.current_node_id, instance.status.value, payload.node_id, extra=context,
            )
            return {"success": False, "reason": Reason.STALE_NODE}

        contact_id = payload.contact_id or instance.contact_id
        dedupe_key = dedupe_key_for(payload, contact_id)
        existing = await self._store.find_outbound_by_dedupe_key(payload.tenant_id, dedupe_key)
        if existing is not None:
            log.info("Send already recorded as %s; not dispatching again", existing.message_id, extra=context)
            return {"success": True, "reason": Reason.ALREADY_SENT, "messageId": existing.message_id}

        plan = self._interpreter.load_instance_plan(instance)
        node = plan.node(payload.node_id)
        message_id = await self._dispatcher.dispatch(
            SendRequest(
                tenant_id=payload.tenant_id,
                campaign_id=payload.campaign_id,
                contact_id=contact_id,
                lead_id=payload.lead_id or instance.lead_id,
                node_id=payload.node_id,
                channel=payload.channel,
                dedupe_key=dedupe_key,
                content=dict(node.content) if node else {},
            )
        )

        sent_at = self._clock()
        await self._store.save_outbound_message(
            OutboundMessage(
                message_id=message_id,
                tenant_id=payload.tenant_id,
                campaign_id=payload.campaign_id,
                contact_id=contact_id,
                node_id=payload.node_id,
                channel=payload.channel,
                dedupe_key=dedupe_key,
                sent_at=sent_at,
            )
        )
        timers = await self._interpreter.arm_node_timeouts(instance, payload.node_id, message_id, sent_at)
        log.info(
            "Sent %s for campaign %s node %s as %s; armed %d timer(s)", payload.channel,
            payload.campaign_id, payload.node_id, message_id, len(timers), extra=context,
        )
        return {
            "success": True,
            "reason": Reason.SENT,
            "messageId": message_id,
            "timeoutActionIds": [t.id for t in timers],
        }
