# /driftly/models/contact.py

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import Field, field_validator

from driftly.models.common import MongoModel, ObjectIdStr, UtcDatetime, utc_now


class ContactStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    UNSUBSCRIBED = "unsubscribed"
    BOUNCED = "bounced"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({ContactStatus.COMPLETED, ContactStatus.UNSUBSCRIBED, ContactStatus.BOUNCED})

# Fields the engine owns. Actions are never allowed to write them.
IDENTITY_FIELDS = frozenset({"id", "_id", "owner", "flow"})
ENGINE_FIELDS = frozenset({
    "status", "currentStepId", "currentStep", "flowPath", "interactions", "stats",
    "events", "nextProcessingDate", "nextEmailDate", "lastEmailSent", "lastError",
    "leaseExpiresAt", "leaseOwner", "createdAt", "updatedAt",
})


class FlowPathEntry(MongoModel):
    step_id: Optional[str] = None
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    action: Optional[str] = None
    result: Any = None


class Interaction(MongoModel):
    step_id: Optional[str] = None
    opened: bool = False
    opened_at: Optional[UtcDatetime] = None
    clicked: bool = False
    clicked_at: Optional[UtcDatetime] = None
    clicked_links: List[str] = Field(default_factory=list)


class LastError(MongoModel):
    step_id: Optional[str] = None
    error_type: str
    error_message: str
    timestamp: UtcDatetime = Field(default_factory=utc_now)


class ContactStats(MongoModel):
    emails_sent: int = 0
    opens: int = 0
    clicks: int = 0
    webhook_calls: int = 0
    actions_performed: int = 0


class ContactEvents(MongoModel):
    last_open: Optional[UtcDatetime] = None
    last_click: Optional[UtcDatetime] = None
    last_action: Optional[UtcDatetime] = None
    conversion_date: Optional[UtcDatetime] = None


class Contact(MongoModel):
    id: Optional[ObjectIdStr] = Field(default=None, alias="_id")
    owner: Optional[ObjectIdStr] = None
    flow: Optional[ObjectIdStr] = None
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: ContactStatus = ContactStatus.ACTIVE
    current_step_id: Optional[str] = None
    current_step: int = 0
    flow_path: List[FlowPathEntry] = Field(default_factory=list)
    interactions: List[Interaction] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    stats: ContactStats = Field(default_factory=ContactStats)
    events: ContactEvents = Field(default_factory=ContactEvents)
    last_email_sent: Optional[UtcDatetime] = None
    next_email_date: Optional[UtcDatetime] = None
    next_processing_date: Optional[UtcDatetime] = None
    last_error: Optional[LastError] = None
    lease_expires_at: Optional[UtcDatetime] = None
    lease_owner: Optional[str] = None
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    @field_validator("flow_path", "interactions", "tags", mode="before")
    @classmethod
    def allow_null_lists(cls, v):
        return v if v is not None else []

    @field_validator("metadata", "stats", "events", mode="before")
    @classmethod
    def allow_null_maps(cls, v):
        return v if v is not None else {}

    @field_validator("current_step", mode="before")
    @classmethod
    def allow_null_position(cls, v):
        return v if v is not None else 0

    def interaction_for(self, step_id: str) -> Optional[Interaction]:
        for interaction in self.interactions:
            if interaction.step_id == step_id:
                return interaction
        return None

    def interaction_index(self, step_id: str) -> Optional[int]:
        for index, interaction in enumerate(self.interactions):
            if interaction.step_id == step_id:
                return index
        return None

    def snapshot(self) -> Dict[str, Any]:
        """Persisted-shape view used by conditions and webhook payloads."""
        return self.model_dump(by_alias=True)
