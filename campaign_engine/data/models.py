# campaign_engine/data/models.py

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from campaign_engine.common.timeutil import utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class InstanceStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"


class ActionType(str, Enum):
    SEND = "send"
    TIMEOUT = "timeout"


class ActionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELED = "canceled"


# Statuses a scheduled action can still leave
OPEN_ACTION_STATUSES = (ActionStatus.PENDING, ActionStatus.PROCESSING)


class _Record(BaseModel):
    model_config = ConfigDict(use_enum_values=False, populate_by_name=True)


class CampaignInstance(_Record):
    """
    One contact's run through a plan.

    - `plan_json` is the immutable plan document attached at enrollment.
    - `current_node_id` / `node_entered_at` identify the node in flight.
    """

    tenant_id: str
    campaign_id: str
    contact_id: str
    lead_id: Optional[str] = None
    channel: str = "email"
    plan_json: Dict[str, Any]
    status: InstanceStatus = InstanceStatus.ACTIVE
    current_node_id: str
    node_entered_at: datetime = Field(default_factory=utcnow)
    started_at: datetime = Field(default_factory=utcnow)
    stopped_at: Optional[datetime] = None
    stop_reason: Optional[str] = None


class CampaignTransition(_Record):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    campaign_id: str
    from_node_id: str
    to_node_id: str
    event_type: str
    event_ref: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)


class ScheduledAction(_Record):
    """Ledger row for a timer that should exist; the queue can be rebuilt from these."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    campaign_id: str
    contact_id: str
    node_id: str
    action_type: ActionType
    scheduled_at: datetime
    status: ActionStatus = ActionStatus.PENDING
    bull_job_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MessageEvent(_Record):
    """Append-only record of a real provider event, in raw provider vocabulary."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    message_id: str
    event_type: str
    timestamp: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)


class OutboundMessage(_Record):
    message_id: str
    tenant_id: str
    campaign_id: str
    contact_id: str
    node_id: str
    channel: str
    dedupe_key: str
    sent_at: datetime = Field(default_factory=utcnow)


class CalendarClick(_Record):
    """Out-of-band positive signal (tracked calendar link followed)."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    campaign_id: str
    node_id: Optional[str] = None
    contact_id: str
    lead_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
