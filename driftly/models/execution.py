# /driftly/models/execution.py

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from driftly.models.contact import ContactStatus


class StepOutcome(str, Enum):
    ADVANCED = "advanced"      # moved to another step
    WAITING = "waiting"        # rescheduled into the future on the same step
    TERMINATED = "terminated"  # completed / bounced / removed
    RECOVERED = "recovered"    # reset after its current step vanished
    MIGRATED = "migrated"      # legacy numeric position converted to a step id
    ERROR = "error"
    SKIPPED = "skipped"


class ExecutionResult(BaseModel):
    """What one step execution did to one contact."""
    contact_id: Optional[str] = None
    flow_id: Optional[str] = None
    step_id: Optional[str] = None
    step_type: Optional[str] = None
    action: Optional[str] = None
    outcome: StepOutcome
    status: ContactStatus = ContactStatus.ACTIVE
    next_step_id: Optional[str] = None
    next_processing_date: Optional[datetime] = None
    message: Optional[str] = None
    dry_run: bool = False
    contact_update: Dict[str, Any] = Field(default_factory=dict)
    flow_update: Dict[str, Any] = Field(default_factory=dict)
    side_effects: List[Dict[str, Any]] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    def is_due_again(self, now: datetime) -> bool:
        return (
            self.outcome in (StepOutcome.ADVANCED, StepOutcome.RECOVERED, StepOutcome.MIGRATED)
            and self.status == ContactStatus.ACTIVE
            and self.next_processing_date is not None
            and self.next_processing_date <= now
        )


class TickSummary(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    due: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    migrated: int = 0
    legacy_processed: int = 0
    outcomes: Dict[str, int] = Field(default_factory=dict)

    def record(self, result: ExecutionResult) -> None:
        key = result.outcome.value
        self.outcomes[key] = self.outcomes.get(key, 0) + 1

    @property
    def duration_seconds(self) -> float:
        if not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()
