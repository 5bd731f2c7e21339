"""
Schedule/task store used by the reschedule engine.

The engine only needs a narrow slice of the CRUD layer: read a schedule and its
tasks, rewrite a task's dates, and append to the activity log. Two
implementations: an in-memory one (tests, single process) and one over the
SQLModel tables.
"""

from datetime import date
from typing import Callable, Dict, List, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from replanner.db import async_session
from replanner.models import ActivityLog, Schedule, Task, utcnow


class ScheduleStoreError(Exception):
    pass


class ScheduleNotFoundError(ScheduleStoreError):
    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule {schedule_id} not found")


class TaskNotFoundError(ScheduleStoreError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class ScheduleStore(Protocol):
    async def get_schedule(self, schedule_id: str) -> Schedule: ...

    async def get_tasks(self, schedule_id: str) -> List[Task]: ...

    async def get_task(self, task_id: str) -> Task: ...

    async def update_task_dates(self, task_id: str, start: date, end: date) -> Task: ...

    async def log_activity(
        self,
        entity_id: str,
        action: str,
        user_id: Optional[str] = None,
        field: Optional[str] = None,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
    ) -> None: ...


class InMemoryScheduleStore:
    def __init__(self):
        self.schedules: Dict[str, Schedule] = {}
        self.tasks: Dict[str, Task] = {}
        self.activity: List[ActivityLog] = []

    def add_schedule(self, schedule: Schedule, tasks: Optional[List[Task]] = None) -> None:
        self.schedules[schedule.id] = schedule
        for task in tasks or []:
            self.tasks[task.id] = task

    async def get_schedule(self, schedule_id: str) -> Schedule:
        schedule = self.schedules.get(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    async def get_tasks(self, schedule_id: str) -> List[Task]:
        await self.get_schedule(schedule_id)
        return [t for t in self.tasks.values() if t.schedule_id == schedule_id]

    async def get_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def update_task_dates(self, task_id: str, start: date, end: date) -> Task:
        task = await self.get_task(task_id)
        task.start_date = start
        task.end_date = end
        task.updated_at = utcnow()
        return task

    async def log_activity(self, entity_id, action, user_id=None, field=None, old_value=None, new_value=None) -> None:
        self.activity.append(
            ActivityLog(
                entity_id=entity_id,
                action=action,
                user_id=user_id,
                field=field,
                old_value=old_value,
                new_value=new_value,
            )
        )


class SqlScheduleStore:
    def __init__(self, session_factory: Callable[[], AsyncSession] = async_session):
        self._session_factory = session_factory

    async def get_schedule(self, schedule_id: str) -> Schedule:
        async with self._session_factory() as db:
            schedule = await db.get(Schedule, schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    async def get_tasks(self, schedule_id: str) -> List[Task]:
        async with self._session_factory() as db:
            if await db.get(Schedule, schedule_id) is None:
                raise ScheduleNotFoundError(schedule_id)
            res = await db.execute(
                select(Task).where(Task.schedule_id == schedule_id).order_by(Task.start_date, Task.id)
            )
            return list(res.scalars().all())

    async def get_task(self, task_id: str) -> Task:
        async with self._session_factory() as db:
            task = await db.get(Task, task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def update_task_dates(self, task_id: str, start: date, end: date) -> Task:
        async with self._session_factory() as db:
            task = await db.get(Task, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            task.start_date = start
            task.end_date = end
            task.updated_at = utcnow()
            await db.commit()
            await db.refresh(task)
            return task

    async def log_activity(self, entity_id, action, user_id=None, field=None, old_value=None, new_value=None) -> None:
        async with self._session_factory() as db:
            db.add(
                ActivityLog(
                    entity_id=entity_id,
                    action=action,
                    user_id=user_id,
                    field=field,
                    old_value=old_value,
                    new_value=new_value,
                )
            )
            await db.commit()
