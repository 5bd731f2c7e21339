import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional

from replanner.config import settings
from replanner.models import Task, TaskStatus, as_utc, utcnow
from replanner.schemas.reschedule import SEVERITY_ORDER, DelayedTask, Severity
from replanner.services.schedule_store import ScheduleStore

logger = logging.getLogger("replanner")

DAY = timedelta(days=1)
CLOSED_STATUSES = (TaskStatus.completed, TaskStatus.cancelled)


def classify_severity(delay_days: int, on_critical_path: bool) -> Severity:
    """
    Bucket by delay, then promote critical-path tasks one tier.
    >21 days high, >7 medium, otherwise low.
    """
    if delay_days > 21:
        tier = 2
    elif delay_days > 7:
        tier = 1
    else:
        tier = 0
    if on_critical_path:
        tier += 1
    return SEVERITY_ORDER[tier]


def midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def estimate_end(task: Task, now: datetime) -> datetime:
    """Project completion from the velocity observed so far. Naive `now` is read as UTC."""
    now = as_utc(now)
    start = midnight(task.start_date)
    end = midnight(task.end_date)
    elapsed = now - start
    progress = task.progress_percentage or 0

    if progress <= 0:
        remaining = end - now
        if remaining > timedelta(0):
            return now + remaining * 2
        # past due with nothing done: assume the full planned duration from today
        return now + (end - start)
    return now + elapsed * ((100 - progress) / progress)


def find_delayed_tasks(tasks: Iterable[Task], now: datetime, tolerance: float) -> List[DelayedTask]:
    delayed: List[DelayedTask] = []
    now = as_utc(now)

    for task in tasks:
        if task.status in CLOSED_STATUSES:
            continue
        if task.start_date is None or task.end_date is None:
            continue

        start = midnight(task.start_date)
        end = midnight(task.end_date)
        if start > now:
            continue
        planned = end - start
        if planned <= timedelta(0):
            continue

        actual = task.progress_percentage or 0
        # optional grace band; with no tolerance every projected overrun counts
        if tolerance > 0:
            expected = min(100.0, (now - start) / planned * 100)
            if actual >= expected - tolerance:
                continue

        estimated = estimate_end(task, now)
        delay_days = math.ceil((estimated - end) / DAY)
        if delay_days <= 0:
            continue

        delayed.append(
            DelayedTask(
                task_id=task.id,
                task_name=task.name,
                expected_end_date=task.end_date,
                current_progress=actual,
                estimated_end_date=estimated.date(),
                delay_days=delay_days,
                is_on_critical_path=bool(task.is_critical_path),
                severity=classify_severity(delay_days, bool(task.is_critical_path)),
            )
        )

    # most severe first, longest delay first within a tier
    delayed.sort(key=lambda d: (-SEVERITY_ORDER.index(d.severity), -d.delay_days))
    return delayed


async def detect_delays(
    store: ScheduleStore,
    schedule_id: str,
    now: Optional[datetime] = None,
    tolerance: Optional[float] = None,
) -> List[DelayedTask]:
    """Read-only: raises ScheduleNotFoundError from the store for unknown schedules."""
    tasks = await store.get_tasks(schedule_id)
    delayed = find_delayed_tasks(
        tasks,
        now or utcnow(),
        settings.reschedule_progress_tolerance if tolerance is None else tolerance,
    )
    logger.info("delays_detected", extra={"schedule_id": schedule_id, "delayed": len(delayed), "tasks": len(tasks)})
    return delayed
