"""Reschedule proposal generator.

``generate`` detects delays and asks the completion service for minimal-disruption
date changes. The result is stored as a pending proposal.

The generator never writes task dates. Changes reach the schedule only when a
proposal is accepted or modified.
"""

import json
import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from replanner.config import Settings, settings
from replanner.models import Schedule, Task, TaskStatus, as_utc, utcnow
from replanner.schemas.reschedule import (
    DelayedTask,
    EstimatedImpact,
    ProposalStatus,
    ProposedChange,
    RescheduleAIResponse,
    RescheduleProposal,
)
from replanner.services.background import BackgroundRunner
from replanner.services.completion_client import CompletionClient, PromptTemplate
from replanner.services.delay_detector import find_delayed_tasks
from replanner.services.proposal_store import ProposalStore
from replanner.services.schedule_store import ScheduleStore

logger = logging.getLogger("replanner")

NO_DELAYS_RATIONALE = "No delays detected. Schedule is on track."

SYSTEM_PROMPT = PromptTemplate(
    """\
You are an expert project scheduling assistant. Your role is to analyze delayed tasks in a
project schedule and propose minimal-disruption date changes to get the project back on track.

RULES:
- Only propose changes for tasks that NEED to move (delayed tasks and their dependents).
- Respect dependency chains: if task B depends on task A, B cannot start before A finishes.
- Minimize the impact on the overall project end date.
- Prefer compressing non-critical-path tasks over extending the critical path.
- Dates must be in YYYY-MM-DD format and proposed_end_date must not precede proposed_start_date.
- Be realistic: account for the delays already detected.
- estimated_impact.proposed_end_date is the latest proposed_end_date among all tasks, or the
  original end date if that is later.
- days_change is positive if the project is extended, negative if shortened, 0 if unchanged.

OUTPUT FORMAT (strict JSON):
{
  "proposed_changes": [
    {"task_id": "...", "task_name": "...", "proposed_start_date": "YYYY-MM-DD",
     "proposed_end_date": "YYYY-MM-DD", "reason": "..."}
  ],
  "rationale": "...",
  "estimated_impact": {"proposed_end_date": "YYYY-MM-DD", "days_change": 0, "critical_path_impact": "..."}
}""",
    "1.0.0",
)

USER_PROMPT = PromptTemplate(
    """\
Schedule: {{schedule_name}} ({{schedule_id}})
Original end date: {{original_end_date}}
Today: {{today}}

DETECTED DELAYS:
{{delayed_tasks}}

AFFECTED TASKS (delayed tasks, what they wait on, and everything downstream of them):
{{context_tasks}}

Critical path task ids: {{critical_path_ids}}

Propose date changes that reschedule the affected tasks with minimal disruption.
Only include tasks whose dates actually need to change.""",
    "1.0.0",
)


def new_proposal_id() -> str:
    return f"rp-{uuid.uuid4().hex}"


def context_tasks(tasks: Iterable[Task], delayed: Iterable[DelayedTask]) -> List[Task]:
    """Delayed tasks, their direct upstream dependency, and all transitive dependents."""
    by_id = {t.id: t for t in tasks}
    dependents: Dict[str, List[str]] = {}
    for t in by_id.values():
        if t.dependency:
            dependents.setdefault(t.dependency, []).append(t.id)

    frontier = [d.task_id for d in delayed if d.task_id in by_id]
    upstream = {by_id[i].dependency for i in frontier if by_id[i].dependency in by_id}
    downstream = set()
    while frontier:
        task_id = frontier.pop()
        if task_id in downstream:
            continue
        downstream.add(task_id)
        frontier.extend(dependents.get(task_id, []))
    wanted = upstream | downstream
    return [t for t in by_id.values() if t.id in wanted]


def _task_summary(task: Task) -> dict:
    return {
        "id": task.id,
        "name": task.name,
        "status": task.status.value if isinstance(task.status, TaskStatus) else task.status,
        "start_date": task.start_date.isoformat() if task.start_date else None,
        "end_date": task.end_date.isoformat() if task.end_date else None,
        "progress_percentage": task.progress_percentage or 0,
        "dependency": task.dependency,
        "is_critical_path": bool(task.is_critical_path),
    }


class ProposalGenerator:
    def __init__(
        self,
        schedule_store: ScheduleStore,
        proposal_store: ProposalStore,
        completion_client: CompletionClient,
        background: Optional[BackgroundRunner] = None,
        config: Settings = settings,
    ):
        self.schedule_store = schedule_store
        self.proposal_store = proposal_store
        self.completion_client = completion_client
        self.background = background or BackgroundRunner()
        self.config = config

    async def generate(
        self,
        schedule_id: str,
        requesting_user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RescheduleProposal:
        now = as_utc(now) if now else utcnow()
        schedule = await self.schedule_store.get_schedule(schedule_id)
        tasks = await self.schedule_store.get_tasks(schedule_id)
        delayed = find_delayed_tasks(tasks, now, self.config.reschedule_progress_tolerance)

        if not delayed:
            changes, rationale = [], NO_DELAYS_RATIONALE
            impact = EstimatedImpact(
                original_end_date=schedule.end_date,
                proposed_end_date=schedule.end_date,
                days_change=0,
                critical_path_impact="Critical path is not affected.",
            )
        elif self.config.reschedule_heuristic_fallback and not self.completion_client.is_available():
            logger.warning("reschedule_heuristic_fallback", extra={"schedule_id": schedule_id})
            changes, rationale, impact = heuristic_proposal(schedule, tasks, delayed)
        else:
            # Completion failures propagate unchanged; the caller decides whether to retry.
            changes, rationale, impact = await self._ask_model(schedule, tasks, delayed, now)

        proposal = RescheduleProposal(
            id=new_proposal_id(),
            schedule_id=schedule_id,
            status=ProposalStatus.pending,
            delayed_tasks=delayed,
            proposed_changes=changes,
            rationale=rationale,
            estimated_impact=impact,
            created_at=utcnow(),
        )
        await self.proposal_store.add(proposal)
        logger.info(
            "reschedule_proposal_created",
            extra={
                "proposal_id": proposal.id,
                "schedule_id": schedule_id,
                "delayed": len(delayed),
                "changes": len(changes),
            },
        )

        if requesting_user_id:
            self.background.spawn(
                self.schedule_store.log_activity(
                    schedule_id,
                    "auto-reschedule-proposed",
                    user_id=requesting_user_id,
                    field="proposal",
                    new_value=(
                        f"Proposal {proposal.id}: {len(delayed)} delayed task(s), "
                        f"{len(changes)} proposed change(s)"
                    ),
                ),
                name=f"activity:{proposal.id}",
            )
        return proposal

    async def _ask_model(self, schedule: Schedule, tasks: List[Task], delayed: List[DelayedTask], now: datetime):
        user_message = USER_PROMPT.render(
            schedule_name=schedule.name,
            schedule_id=schedule.id,
            original_end_date=schedule.end_date.isoformat(),
            today=now.date().isoformat(),
            delayed_tasks=json.dumps([d.model_dump(mode="json") for d in delayed], indent=2),
            context_tasks=json.dumps([_task_summary(t) for t in context_tasks(tasks, delayed)], indent=2),
            critical_path_ids=json.dumps([t.id for t in tasks if t.is_critical_path]),
        )
        result = await self.completion_client.complete_with_json_schema(
            SYSTEM_PROMPT.render(),
            user_message,
            RescheduleAIResponse,
            max_tokens=self.config.reschedule_max_tokens,
        )
        answer: RescheduleAIResponse = result.data

        by_id = {t.id: t for t in tasks}
        changes: List[ProposedChange] = []
        for change in answer.proposed_changes:
            task = by_id.get(change.task_id)
            if task is None:
                logger.warning(
                    "reschedule_unknown_task_dropped",
                    extra={"schedule_id": schedule.id, "task_id": change.task_id},
                )
                continue
            changes.append(
                ProposedChange(
                    task_id=task.id,
                    task_name=task.name,
                    current_start_date=task.start_date,
                    current_end_date=task.end_date,
                    proposed_start_date=change.proposed_start_date,
                    proposed_end_date=change.proposed_end_date,
                    reason=change.reason,
                )
            )

        impact = EstimatedImpact(
            original_end_date=schedule.end_date,
            proposed_end_date=answer.estimated_impact.proposed_end_date,
            days_change=answer.estimated_impact.days_change,
            critical_path_impact=answer.estimated_impact.critical_path_impact,
        )
        logger.info(
            "reschedule_model_answer",
            extra={
                "schedule_id": schedule.id,
                "attempts": result.attempts,
                "input_tokens": result.usage.input_tokens,
                "output_tokens": result.usage.output_tokens,
                "prompt_version": SYSTEM_PROMPT.version,
            },
        )
        return changes, answer.rationale, impact


def heuristic_proposal(schedule: Schedule, tasks: List[Task], delayed: List[DelayedTask]):
    """
    No-model fallback: extend each delayed task by its delay and push direct
    dependents to start the day after, keeping their planned duration.
    """
    by_id = {t.id: t for t in tasks}
    changes: Dict[str, ProposedChange] = {}

    for d in delayed:
        task = by_id.get(d.task_id)
        if task is None or task.start_date is None or task.end_date is None:
            continue
        new_end = task.end_date + timedelta(days=d.delay_days)
        changes.setdefault(
            task.id,
            ProposedChange(
                task_id=task.id,
                task_name=task.name,
                current_start_date=task.start_date,
                current_end_date=task.end_date,
                proposed_start_date=task.start_date,
                proposed_end_date=new_end,
                reason=(
                    f"Task is {d.delay_days} days behind schedule ({d.current_progress:g}% complete). "
                    "Extending end date to match current velocity."
                ),
            ),
        )

        for dep in tasks:
            if dep.dependency != task.id or dep.id in changes:
                continue
            if dep.start_date is None or dep.end_date is None or dep.status in (
                TaskStatus.completed,
                TaskStatus.cancelled,
            ):
                continue
            new_start = new_end + timedelta(days=1)
            changes[dep.id] = ProposedChange(
                task_id=dep.id,
                task_name=dep.name,
                current_start_date=dep.start_date,
                current_end_date=dep.end_date,
                proposed_start_date=new_start,
                proposed_end_date=new_start + (dep.end_date - dep.start_date),
                reason=f'Shifted due to delay in dependency "{task.name}".',
            )

    latest: date = max([c.proposed_end_date for c in changes.values()] + [schedule.end_date])
    on_critical_path = any(d.is_on_critical_path for d in delayed)
    impact = EstimatedImpact(
        original_end_date=schedule.end_date,
        proposed_end_date=latest,
        days_change=(latest - schedule.end_date).days,
        critical_path_impact=(
            "Critical path is affected. Project end date will likely be extended."
            if on_critical_path
            else "Critical path is not directly affected. Impact may be limited to non-critical tasks."
        ),
    )
    rationale = (
        f"Detected {len(delayed)} delayed task(s). Proposed date adjustments extend delayed tasks "
        "to match current velocity and shift dependent tasks accordingly."
    )
    return list(changes.values()), rationale, impact
