# /driftly/models/api.py

from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from datetime import datetime

from driftly.models.common import utc_now

# Request and response bodies of the automation API. Request fields use the
# same camelCase names as the stored documents.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict] = None
    timestamp: datetime = Field(default_factory=utc_now)
    version: str


class UpdateStepsRequest(BaseModel):
    steps: List[Dict[str, Any]]


class EnrollContactRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., min_length=3, max_length=320)
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)

    def identity(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class StepTestRequest(BaseModel):
    """Synthetic contact for a single-step test run. Nothing is persisted."""
    contact: Dict[str, Any] = Field(default_factory=dict)
    deliver: bool = False
