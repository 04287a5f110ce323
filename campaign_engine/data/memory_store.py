# campaign_engine/data/memory_store.py
import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from campaign_engine.common.errors import InvalidPayloadError
from campaign_engine.data.models import (
    ActionStatus,
    CalendarClick,
    CampaignInstance,
    CampaignTransition,
    InstanceStatus,
    MessageEvent,
    OutboundMessage,
    ScheduledAction,
)
from campaign_engine.data.store import CampaignStore


class InMemoryCampaignStore(CampaignStore):
    """
    Process-local store for development and tests.
    One asyncio.Lock makes every compare-and-set atomic.
    Records are copied on the way in and out so callers never share state.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._instances: Dict[Tuple[str, str], CampaignInstance] = {}
        self._transitions: List[CampaignTransition] = []
        self._actions: Dict[str, ScheduledAction] = {}
        self._events: List[MessageEvent] = []
        self._outbound: Dict[Tuple[str, str], OutboundMessage] = {}
        self._clicks: List[CalendarClick] = []

    # ---- Campaign instances -------------------------------------------------

    async def create_instance(self, instance: CampaignInstance) -> CampaignInstance:
        async with self._lock:
            key = (instance.tenant_id, instance.campaign_id)
            if key in self._instances:
                raise InvalidPayloadError(f"campaign {instance.campaign_id} is already initialized")
            self._instances[key] = instance.model_copy(deep=True)
            return instance.model_copy(deep=True)

    async def get_instance(self, tenant_id: str, campaign_id: str) -> Optional[CampaignInstance]:
        async with self._lock:
            inst = self._instances.get((tenant_id, campaign_id))
            return inst.model_copy(deep=True) if inst else None

    async def apply_transition(
        self,
        tenant_id: str,
        campaign_id: str,
        *,
        expected_node_id: str,
        to_node_id: str,
        event_type: str,
        event_ref: Optional[str],
        occurred_at: datetime,
        stop: bool = False,
        stop_reason: Optional[str] = None,
    ) -> Optional[CampaignTransition]:
        async with self._lock:
            inst = self._instances.get((tenant_id, campaign_id))
            if (
                inst is None
                or inst.status != InstanceStatus.ACTIVE
                or inst.current_node_id != expected_node_id
            ):
                return None

            inst.current_node_id = to_node_id
            inst.node_entered_at = occurred_at
            if stop:
                inst.status = InstanceStatus.STOPPED
                inst.stopped_at = occurred_at
                inst.stop_reason = stop_reason

            transition = CampaignTransition(
                tenant_id=tenant_id,
                campaign_id=campaign_id,
                from_node_id=expected_node_id,
                to_node_id=to_node_id,
                event_type=event_type,
                event_ref=event_ref,
                occurred_at=occurred_at,
            )
            self._transitions.append(transition)
            return transition.model_copy()

    async def stop_instance(self, tenant_id: str, campaign_id: str, reason: str, at: datetime) -> bool:
        async with self._lock:
            inst = self._instances.get((tenant_id, campaign_id))
            if inst is None or inst.status != InstanceStatus.ACTIVE:
                return False
            inst.status = InstanceStatus.STOPPED
            inst.stopped_at = at
            inst.stop_reason = reason
            return True

    async def list_transitions(self, tenant_id: str, campaign_id: str) -> List[CampaignTransition]:
        async with self._lock:
            rows = [
                t.model_copy() for t in self._transitions
                if t.tenant_id == tenant_id and t.campaign_id == campaign_id
            ]
        return sorted(rows, key=lambda t: t.occurred_at)

    async def latest_entry_transition(
        self, tenant_id: str, campaign_id: str, node_id: str
    ) -> Optional[CampaignTransition]:
        rows = [t for t in await self.list_transitions(tenant_id, campaign_id) if t.to_node_id == node_id]
        return rows[-1] if rows else None

    # ---- Scheduled-action ledger -------------------------------------------

    async def insert_action(self, action: ScheduledAction) -> ScheduledAction:
        async with self._lock:
            self._actions[action.id] = action.model_copy(deep=True)
            return action.model_copy(deep=True)

    async def get_action(self, action_id: str) -> Optional[ScheduledAction]:
        async with self._lock:
            row = self._actions.get(action_id)
            return row.model_copy(deep=True) if row else None

    async def update_action_status(
        self,
        action_id: str,
        status: ActionStatus,
        *,
        expected: Sequence[ActionStatus],
        at: datetime,
        bull_job_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[ScheduledAction]:
        async with self._lock:
            row = self._actions.get(action_id)
            if row is None or row.status not in tuple(expected):
                return None
            row.status = status
            row.updated_at = at
            if bull_job_id is not None:
                row.bull_job_id = bull_job_id
            if error is not None:
                row.error = error
            return row.model_copy(deep=True)

    async def list_actions_by_status(
        self, status: ActionStatus, created_before: Optional[datetime] = None
    ) -> List[ScheduledAction]:
        async with self._lock:
            rows = [
                a.model_copy(deep=True) for a in self._actions.values()
                if a.status == status and (created_before is None or a.created_at < created_before)
            ]
        return sorted(rows, key=lambda a: a.scheduled_at)

    async def list_campaign_actions(self, tenant_id: str, campaign_id: str) -> List[ScheduledAction]:
        async with self._lock:
            rows = [
                a.model_copy(deep=True) for a in self._actions.values()
                if a.tenant_id == tenant_id and a.campaign_id == campaign_id
            ]
        return sorted(rows, key=lambda a: a.scheduled_at)

    # ---- Real events and outbound messages ---------------------------------

    async def append_message_event(self, event: MessageEvent) -> MessageEvent:
        async with self._lock:
            self._events.append(event.model_copy(deep=True))
            return event

    async def find_message_event(
        self, tenant_id: str, message_id: str, event_type: str
    ) -> Optional[MessageEvent]:
        async with self._lock:
            for ev in self._events:
                if ev.tenant_id == tenant_id and ev.message_id == message_id and ev.event_type == event_type:
                    return ev.model_copy(deep=True)
        return None

    async def save_outbound_message(self, message: OutboundMessage) -> OutboundMessage:
        async with self._lock:
            self._outbound[(message.tenant_id, message.message_id)] = message.model_copy()
            return message

    async def get_outbound_message(self, tenant_id: str, message_id: str) -> Optional[OutboundMessage]:
        async with self._lock:
            msg = self._outbound.get((tenant_id, message_id))
            return msg.model_copy() if msg else None

    async def find_outbound_by_dedupe_key(self, tenant_id: str, dedupe_key: str) -> Optional[OutboundMessage]:
        async with self._lock:
            for msg in self._outbound.values():
                if msg.tenant_id == tenant_id and msg.dedupe_key == dedupe_key:
                    return msg.model_copy()
        return None

    # ---- Out-of-band signals -----------------------------------------------

    async def record_calendar_click(self, click: CalendarClick) -> CalendarClick:
        async with self._lock:
            self._clicks.append(click.model_copy())
            return click

    async def find_calendar_clicks(
        self,
        tenant_id: str,
        campaign_id: str,
        contact_id: str,
        lead_id: Optional[str],
        since: datetime,
        until: datetime,
    ) -> List[CalendarClick]:
        async with self._lock:
            rows = [
                c.model_copy() for c in self._clicks
                if c.tenant_id == tenant_id
                and c.campaign_id == campaign_id
                and (c.contact_id == contact_id or (lead_id is not None and c.lead_id == lead_id))
                and since <= c.timestamp <= until
            ]
        return sorted(rows, key=lambda c: c.timestamp, reverse=True)
