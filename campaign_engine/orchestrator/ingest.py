# campaign_engine/orchestrator/ingest.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from campaign_engine.common.events import normalize_event_type, should_trigger_transition
from campaign_engine.common.metrics import EVENTS_INGESTED
from campaign_engine.common.timeutil import Clock, ensure_aware, utcnow
from campaign_engine.data.models import CalendarClick, MessageEvent
from campaign_engine.data.store import CampaignStore
from campaign_engine.orchestrator.interpreter import PlanInterpreter, Reason, TransitionResult

log = logging.getLogger("outreach.ingest")


class EventIngestor:
    """
    Entry point for real engagement events and out-of-band signals.

    Every event is appended to the message-event log in provider vocabulary
    (that log is what timeout reconciliation consults). Events outside the
    ignore list are then normalized and offered to the interpreter for the
    node that sent the message.
    """

    def __init__(
        self,
        store: CampaignStore,
        interpreter: PlanInterpreter,
        ignored_events: Iterable[str] = ("click",),
        clock: Clock = utcnow,
    ) -> None:
        self._store = store
        self._interpreter = interpreter
        self._ignored = frozenset(ignored_events)
        self._clock = clock

    async def ingest_message_event(
        self,
        *,
        tenant_id: str,
        message_id: str,
        event_type: str,
        timestamp: Optional[datetime] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        event = MessageEvent(
            tenant_id=tenant_id,
            message_id=message_id,
            event_type=event_type,
            timestamp=ensure_aware(timestamp or self._clock()),
            payload=payload or {},
        )
        await self._store.append_message_event(event)
        EVENTS_INGESTED.labels(event_type).inc()
        context = {"tenant_id": tenant_id, "message_id": message_id, "event_type": event_type}

        if not should_trigger_transition(event_type, self._ignored):
            log.info("Recorded %s for %s; type is excluded from transitions", event_type, message_id, extra=context)
            return TransitionResult(success=False, reason=Reason.EVENT_IGNORED)

        message = await self._store.get_outbound_message(tenant_id, message_id)
        if message is None:
            log.info("Recorded %s for unknown message %s", event_type, message_id, extra=context)
            return TransitionResult(success=False, reason=Reason.MISSING_CAMPAIGN_DATA)

        return await self._interpreter.process_transition(
            tenant_id=tenant_id,
            campaign_id=message.campaign_id,
            contact_id=message.contact_id,
            event_type=normalize_event_type(event_type),
            current_node_id=message.node_id,
            event_ref=event.id,
            message_id=message_id,
        )

    async def record_calendar_click(
        self,
        *,
        tenant_id: str,
        campaign_id: str,
        contact_id: str,
        node_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> CalendarClick:
        click = CalendarClick(
            tenant_id=tenant_id,
            campaign_id=campaign_id,
            node_id=node_id,
            contact_id=contact_id,
            lead_id=lead_id,
            timestamp=ensure_aware(timestamp or self._clock()),
        )
        await self._store.record_calendar_click(click)
        log.info(
            "Recorded calendar click for campaign %s contact %s", campaign_id, contact_id,
            extra={"tenant_id": tenant_id, "campaign_id": campaign_id, "node_id": node_id},
        )
        return click
