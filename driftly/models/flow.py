# /driftly/models/flow.py

from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import ConfigDict, Field, field_validator, model_validator

from driftly.models.common import MongoModel, ObjectIdStr, UtcDatetime, utc_now

# Sentinel accepted anywhere a next-step id is expected. Routing to it ends the flow.
EXIT = "exit"


class StepType(str, Enum):
    EMAIL = "email"
    DELAY = "delay"
    CONDITION = "condition"
    WEBHOOK = "webhook"
    ACTION = "action"


class ActionType(str, Enum):
    TAG = "tag"
    UPDATE_CONTACT = "update_contact"
    ADD_TO_FLOW = "add_to_flow"
    REMOVE_FROM_FLOW = "remove_from_flow"
    CUSTOM = "custom"


class ConditionType(str, Enum):
    OPEN = "open"
    CLICK = "click"
    ATTRIBUTE = "attribute"
    TAG = "tag"
    DATE = "date"


class NextSteps(MongoModel):
    default: Optional[str] = None
    yes: Optional[str] = None
    no: Optional[str] = None

    def targets(self) -> Dict[str, str]:
        """Branch name -> target for every branch that is set."""
        return {
            branch: target
            for branch, target in (("default", self.default), ("yes", self.yes), ("no", self.no))
            if target
        }


class Condition(MongoModel):
    type: str
    value: Any = None
    attribute: Optional[str] = None
    operator: Optional[str] = None
    timeframe: Optional[float] = None  # hours


class BaseStep(MongoModel):
    id: str = ""
    name: Optional[str] = None
    type: str
    order: Optional[int] = None
    next_steps: NextSteps = Field(default_factory=NextSteps)

    @field_validator("next_steps", mode="before")
    @classmethod
    def allow_null_next_steps(cls, v):
        return v if v is not None else {}


class _DelayFields(MongoModel):
    delay_days: float = 0
    delay_hours: float = 0

    @property
    def delay(self) -> timedelta:
        return timedelta(days=self.delay_days or 0, hours=self.delay_hours or 0)


class EmailStep(BaseStep, _DelayFields):
    type: Literal["email"] = "email"
    subject: str = ""
    body: str = ""


class DelayStep(BaseStep, _DelayFields):
    type: Literal["delay"] = "delay"


class ConditionStep(BaseStep):
    type: Literal["condition"] = "condition"
    condition: Optional[Condition] = None


class WebhookStep(BaseStep):
    type: Literal["webhook"] = "webhook"
    webhook_url: str = ""
    webhook_method: str = "POST"
    webhook_headers: Dict[str, str] = Field(default_factory=dict)
    webhook_body: Dict[str, Any] = Field(default_factory=dict)


class ActionStep(BaseStep):
    type: Literal["action"] = "action"
    action_type: str = ActionType.CUSTOM.value
    action_config: Dict[str, Any] = Field(default_factory=dict)


class GenericStep(BaseStep):
    """A stored step whose type this engine does not know. Routed, never executed."""
    model_config = ConfigDict(extra="allow")


class LegacyStep(BaseStep, _DelayFields):
    """Pre step-id flows stored plain positional emails without id or type."""
    type: Literal["legacy"] = "legacy"
    subject: str = ""
    body: str = ""


Step = Union[EmailStep, DelayStep, ConditionStep, WebhookStep, ActionStep, LegacyStep, GenericStep]

STEP_MODELS = {
    StepType.EMAIL: EmailStep,
    StepType.DELAY: DelayStep,
    StepType.CONDITION: ConditionStep,
    StepType.WEBHOOK: WebhookStep,
    StepType.ACTION: ActionStep,
}


def parse_step(raw: Union[Dict[str, Any], BaseStep]) -> Step:
    if isinstance(raw, BaseStep):
        return raw
    step_type = raw.get("type")
    if not step_type:
        if raw.get("id"):
            return GenericStep.model_validate({**raw, "type": "unknown"})
        return LegacyStep.model_validate({k: v for k, v in raw.items() if k != "type"})
    try:
        model = STEP_MODELS[StepType(step_type)]
    except ValueError:
        return GenericStep.model_validate(raw)
    return model.model_validate(raw)


class FlowStats(MongoModel):
    triggered: int = 0
    completed: int = 0
    active: int = 0
    failed: int = 0
    emails_sent: int = 0
    webhook_calls: int = 0


class ErrorRecord(MongoModel):
    date: UtcDatetime = Field(default_factory=utc_now)
    contact_id: Optional[ObjectIdStr] = None
    step_id: Optional[str] = None
    step_name: Optional[str] = None
    error_type: str
    error_message: str
    additional_data: Dict[str, Any] = Field(default_factory=dict)


class StepErrorCount(MongoModel):
    count: int = 0
    name: Optional[str] = None


class ErrorStats(MongoModel):
    total_errors: int = 0
    by_step: Dict[str, StepErrorCount] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)


class Flow(MongoModel):
    id: Optional[ObjectIdStr] = Field(default=None, alias="_id")
    owner: Optional[ObjectIdStr] = None
    name: str = ""
    description: Optional[str] = None
    is_active: bool = False
    steps: List[Step] = Field(default_factory=list)
    stats: FlowStats = Field(default_factory=FlowStats)
    errors: List[ErrorRecord] = Field(default_factory=list)
    error_stats: ErrorStats = Field(default_factory=ErrorStats)
    created_at: Optional[UtcDatetime] = None
    updated_at: Optional[UtcDatetime] = None

    @field_validator("steps", mode="before")
    @classmethod
    def parse_steps(cls, v):
        return [parse_step(raw) for raw in (v or [])]

    @field_validator("stats", "error_stats", mode="before")
    @classmethod
    def allow_null_aggregates(cls, v):
        return v if v is not None else {}

    @model_validator(mode="after")
    def default_step_order(self):
        for index, step in enumerate(self.steps):
            if step.order is None:
                step.order = index
        return self

    @property
    def is_id_based(self) -> bool:
        """True once every step carries an id and a real type."""
        return bool(self.steps) and all(
            step.id and not isinstance(step, LegacyStep) for step in self.steps
        )
