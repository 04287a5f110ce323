# campaign_engine/web/schemas.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# --------------------------------------------------------------------
# Inbound records from the delivery / link-redirect collaborators
# --------------------------------------------------------------------
class MessageEventIn(_CamelModel):
    """Real engagement event, already mapped out of provider-specific payloads."""

    tenant_id: str = Field(..., alias="tenantId")
    message_id: str = Field(..., alias="messageId", min_length=1)
    event_type: str = Field(..., alias="eventType", min_length=1)
    timestamp: Optional[datetime] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, v: Any) -> Any:
        """Lower-case the event name and accept `event` / `time` spellings."""
        if not isinstance(v, dict):
            return v
        v = dict(v)
        if "event" in v and "eventType" not in v:
            v["eventType"] = v.pop("event")
        if isinstance(v.get("eventType"), str):
            v["eventType"] = v["eventType"].strip().lower()
        if "time" in v and "timestamp" not in v:
            v["timestamp"] = v.pop("time")
        return v

    def idempotency_key(self) -> str:
        ts = self.timestamp.isoformat() if self.timestamp else "-"
        return f"{self.tenant_id}:{self.message_id}:{self.event_type}:{ts}"


class CalendarClickIn(_CamelModel):
    tenant_id: str = Field(..., alias="tenantId")
    campaign_id: str = Field(..., alias="campaignId")
    node_id: Optional[str] = Field(default=None, alias="nodeId")
    contact_id: str = Field(..., alias="contactId")
    lead_id: Optional[str] = Field(default=None, alias="leadId")
    timestamp: Optional[datetime] = None


class CampaignStartIn(_CamelModel):
    tenant_id: str = Field(..., alias="tenantId")
    campaign_id: str = Field(..., alias="campaignId")
    contact_id: str = Field(..., alias="contactId")
    lead_id: Optional[str] = Field(default=None, alias="leadId")
    channel: str = "email"
    plan: Dict[str, Any]


class CampaignStopIn(_CamelModel):
    reason: str = "stopped_by_operator"
