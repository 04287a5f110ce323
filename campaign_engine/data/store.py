# campaign_engine/data/store.py
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional, Sequence

from campaign_engine.data.models import (
    ActionStatus,
    CalendarClick,
    CampaignInstance,
    CampaignTransition,
    MessageEvent,
    OutboundMessage,
    ScheduledAction,
)


class CampaignStore(ABC):
    """
    Persistence boundary for the engine.

    The two pieces of shared mutable state (an instance's current node and a
    scheduled action's status) are only changed through compare-and-set calls:
    `apply_transition` and `update_action_status`.
    """

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # ---- Campaign instances -------------------------------------------------

    @abstractmethod
    async def create_instance(self, instance: CampaignInstance) -> CampaignInstance: ...

    @abstractmethod
    async def get_instance(self, tenant_id: str, campaign_id: str) -> Optional[CampaignInstance]: ...

    @abstractmethod
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
        """Move an active instance off `expected_node_id` and record the history row.

        Returns None (and changes nothing) when the instance is gone, not
        active, or no longer at `expected_node_id`.
        """

    @abstractmethod
    async def stop_instance(
        self, tenant_id: str, campaign_id: str, reason: str, at: datetime
    ) -> bool: ...

    @abstractmethod
    async def list_transitions(self, tenant_id: str, campaign_id: str) -> List[CampaignTransition]: ...

    @abstractmethod
    async def latest_entry_transition(
        self, tenant_id: str, campaign_id: str, node_id: str
    ) -> Optional[CampaignTransition]: ...

    # ---- Scheduled-action ledger -------------------------------------------

    @abstractmethod
    async def insert_action(self, action: ScheduledAction) -> ScheduledAction: ...

    @abstractmethod
    async def get_action(self, action_id: str) -> Optional[ScheduledAction]: ...

    @abstractmethod
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
        """Set `status` only if the row is currently in one of `expected`."""

    @abstractmethod
    async def list_actions_by_status(
        self, status: ActionStatus, created_before: Optional[datetime] = None
    ) -> List[ScheduledAction]:
        """Rows in `status` across all tenants, oldest `scheduled_at` first."""

    @abstractmethod
    async def list_campaign_actions(self, tenant_id: str, campaign_id: str) -> List[ScheduledAction]: ...

    # ---- Real events and outbound messages ---------------------------------

    @abstractmethod
    async def append_message_event(self, event: MessageEvent) -> MessageEvent: ...

    @abstractmethod
    async def find_message_event(
        self, tenant_id: str, message_id: str, event_type: str
    ) -> Optional[MessageEvent]: ...

    @abstractmethod
    async def save_outbound_message(self, message: OutboundMessage) -> OutboundMessage: ...

    @abstractmethod
    async def get_outbound_message(self, tenant_id: str, message_id: str) -> Optional[OutboundMessage]: ...

    @abstractmethod
    async def find_outbound_by_dedupe_key(
        self, tenant_id: str, dedupe_key: str
    ) -> Optional[OutboundMessage]: ...

    # ---- Out-of-band signals -----------------------------------------------

    @abstractmethod
    async def record_calendar_click(self, click: CalendarClick) -> CalendarClick: ...

    @abstractmethod
    async def find_calendar_clicks(
        self,
        tenant_id: str,
        campaign_id: str,
        contact_id: str,
        lead_id: Optional[str],
        since: datetime,
        until: datetime,
    ) -> List[CalendarClick]:
        """Clicks for this contact (or lead) in [since, until], newest first."""
