# /driftly/models/domain.py

from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field

from driftly.models.common import utc_now


class DeliveryReceipt(BaseModel):
    """Accepted email as reported by the provider."""
    to: str
    message_id: Optional[str] = None
    status_code: int = 202
    accepted_at: datetime = Field(default_factory=utc_now)
    preview: bool = False


class WebhookResponse(BaseModel):
    status: int
    body: Any = None
