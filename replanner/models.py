from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, List
from sqlmodel import Field, SQLModel
from sqlalchemy import JSON, Column, DateTime

from replanner.schemas.reschedule import ProposalStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive values for timezone-aware columns; they were written in UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def timestamp_column(**kwargs) -> Column:
    return Column(DateTime(timezone=True), nullable=False, **kwargs)


class TaskStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class Schedule(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str
    start_date: date
    end_date: date
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


class Task(SQLModel, table=True):
    id: str = Field(primary_key=True)
    schedule_id: str = Field(foreign_key="schedule.id", index=True)
    name: str
    status: TaskStatus = TaskStatus.pending
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    progress_percentage: float = 0.0
    dependency: Optional[str] = None  # id of the task this one waits on
    is_critical_path: bool = False  # supplied by the critical-path calculation
    updated_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


class ActivityLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    entity_id: str = Field(index=True)
    user_id: Optional[str] = None
    action: str
    field: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column())


class RescheduleProposalRecord(SQLModel, table=True):
    __tablename__ = "reschedule_proposal"

    id: str = Field(primary_key=True)
    schedule_id: str = Field(index=True)
    status: ProposalStatus = ProposalStatus.pending
    delayed_tasks: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    proposed_changes: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    rationale: str
    estimated_impact: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=timestamp_column(index=True))
    feedback: Optional[str] = None
