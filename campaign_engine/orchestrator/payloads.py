# campaign_engine/orchestrator/payloads.py

from datetime import datetime
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from campaign_engine.common.errors import InvalidPayloadError

P = TypeVar("P", bound="JobPayload")


class JobPayload(BaseModel):
    """
    Wire contract between the scheduler and the workers.

    Keys travel in camelCase (`tenantId`, `campaignId`, ...); unknown keys are kept
    so a send job can carry whatever the delivery collaborator needs.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    campaign_id: str = Field(..., alias="campaignId", min_length=1)
    contact_id: Optional[str] = Field(default=None, alias="contactId")
    lead_id: Optional[str] = Field(default=None, alias="leadId")
    node_id: str = Field(..., alias="nodeId", min_length=1)
    scheduled_action_id: Optional[str] = Field(default=None, alias="scheduledActionId")

    @classmethod
    def from_wire(cls: Type[P], payload: Dict[str, Any]) -> P:
        """Validate a job payload. Malformed payloads are non-retryable."""
        try:
            return cls.model_validate(payload or {})
        except ValidationError as ve:
            fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in ve.errors())
            raise InvalidPayloadError(f"invalid {cls.__name__}: {fields}") from ve

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SendJobPayload(JobPayload):
    channel: str = "email"


class TimeoutJobPayload(JobPayload):
    message_id: str = Field(..., alias="messageId", min_length=1)
    event_type: str = Field(..., alias="eventType", min_length=1)
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledAt")
