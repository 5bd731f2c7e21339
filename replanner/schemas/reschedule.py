from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class Severity(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


SEVERITY_ORDER = [Severity.low, Severity.medium, Severity.high, Severity.critical]


class ProposalStatus(str, Enum):
    pending = "pending"
    applying = "applying"  # transitional, held while a transition is in flight
    accepted = "accepted"
    rejected = "rejected"
    modified = "modified"


class DelayedTask(BaseModel):
    task_id: str
    task_name: str
    expected_end_date: date
    current_progress: float = Field(..., ge=0, le=100)
    estimated_end_date: date
    delay_days: int = Field(..., ge=0)
    is_on_critical_path: bool
    severity: Severity


class ProposedChange(BaseModel):
    task_id: str
    task_name: str
    current_start_date: Optional[date] = None
    current_end_date: Optional[date] = None
    proposed_start_date: date
    proposed_end_date: date
    reason: str

    @model_validator(mode="after")
    def _end_not_before_start(self):
        if self.proposed_end_date < self.proposed_start_date:
            raise ValueError("proposed_end_date must not be before proposed_start_date")
        return self


class EstimatedImpact(BaseModel):
    original_end_date: date
    proposed_end_date: date
    days_change: int
    critical_path_impact: str


class RescheduleProposal(BaseModel):
    id: str
    schedule_id: str
    status: ProposalStatus = ProposalStatus.pending
    delayed_tasks: List[DelayedTask] = Field(default_factory=list)
    proposed_changes: List[ProposedChange] = Field(default_factory=list)
    rationale: str
    estimated_impact: EstimatedImpact
    created_at: datetime
    feedback: Optional[str] = None


# ==========================================
# MODEL OUTPUT CONTRACT
# What the completion service must return when asked for a reschedule.
# ==========================================

class AIProposedChange(BaseModel):
    task_id: str
    task_name: str
    proposed_start_date: date
    proposed_end_date: date
    reason: str

    @model_validator(mode="after")
    def _end_not_before_start(self):
        if self.proposed_end_date < self.proposed_start_date:
            raise ValueError("proposed_end_date must not be before proposed_start_date")
        return self


class AIEstimatedImpact(BaseModel):
    proposed_end_date: date
    days_change: int
    critical_path_impact: str


class RescheduleAIResponse(BaseModel):
    proposed_changes: List[AIProposedChange]
    rationale: str = Field(..., min_length=1)
    estimated_impact: AIEstimatedImpact
