"""
Auto-reschedule service: the six operations exposed to the HTTP layer.

Lifecycle
    pending --accept-->          accepted  (changes applied)
    pending --reject(feedback)-> rejected
    pending --modify(changes)--> modified  (replacement changes applied)

accept/reject/modify return False when the proposal is unknown or already
resolved. Every transition first claims the proposal (pending -> applying), so a
second concurrent call sees a non-pending proposal and returns False.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from replanner.config import Settings, settings
from replanner.schemas.reschedule import DelayedTask, ProposalStatus, ProposedChange, RescheduleProposal
from replanner.services.background import BackgroundRunner
from replanner.services.completion_client import CompletionClient
from replanner.services.delay_detector import detect_delays
from replanner.services.proposal_generator import ProposalGenerator
from replanner.services.proposal_store import ProposalStore
from replanner.services.schedule_store import ScheduleStore

logger = logging.getLogger("replanner")


class ApplyChangesError(Exception):
    """A multi-task apply stopped partway. Writes already made are not rolled back."""

    def __init__(self, proposal_id: str, applied: List[str], failed_task_id: str):
        self.proposal_id = proposal_id
        self.applied = applied
        self.failed_task_id = failed_task_id
        super().__init__(
            f"Applying proposal {proposal_id} failed at task {failed_task_id}; "
            f"already updated: {', '.join(applied) or 'none'}"
        )


class InvalidModificationError(ValueError):
    pass


class RescheduleService:
    def __init__(
        self,
        schedule_store: ScheduleStore,
        proposal_store: ProposalStore,
        completion_client: Optional[CompletionClient] = None,
        config: Settings = settings,
    ):
        self.schedule_store = schedule_store
        self.proposal_store = proposal_store
        self.completion_client = completion_client or CompletionClient(config)
        self.config = config
        self.background = BackgroundRunner()
        self.generator = ProposalGenerator(
            schedule_store, proposal_store, self.completion_client, background=self.background, config=config
        )

    async def detect_delays(self, schedule_id: str, now: Optional[datetime] = None) -> List[DelayedTask]:
        return await detect_delays(
            self.schedule_store, schedule_id, now=now, tolerance=self.config.reschedule_progress_tolerance
        )

    async def generate_proposal(
        self, schedule_id: str, requesting_user_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> RescheduleProposal:
        return await self.generator.generate(schedule_id, requesting_user_id, now=now)

    async def get_proposals(self, schedule_id: str) -> List[RescheduleProposal]:
        """All proposals for a schedule, most recent first, whatever their status."""
        return await self.proposal_store.list_for_schedule(schedule_id)

    async def accept_proposal(self, proposal_id: str) -> bool:
        proposal = await self.proposal_store.claim(proposal_id)
        if proposal is None:
            logger.info("reschedule_transition_refused", extra={"proposal_id": proposal_id, "action": "accept"})
            return False

        await self._apply_changes(proposal.id, proposal.proposed_changes)
        await self.proposal_store.finish(proposal.id, ProposalStatus.accepted)
        logger.info(
            "reschedule_proposal_accepted",
            extra={"proposal_id": proposal.id, "changes": len(proposal.proposed_changes)},
        )
        return True

    async def reject_proposal(self, proposal_id: str, feedback: Optional[str] = None) -> bool:
        proposal = await self.proposal_store.claim(proposal_id)
        if proposal is None:
            logger.info("reschedule_transition_refused", extra={"proposal_id": proposal_id, "action": "reject"})
            return False

        try:
            await self.proposal_store.finish(proposal.id, ProposalStatus.rejected, feedback=feedback or None)
        except BaseException:
            await self.proposal_store.release(proposal.id)
            raise
        logger.info("reschedule_proposal_rejected", extra={"proposal_id": proposal.id, "has_feedback": bool(feedback)})
        return True

    async def modify_proposal(self, proposal_id: str, modifications: Sequence[ProposedChange]) -> bool:
        proposal = await self.proposal_store.claim(proposal_id)
        if proposal is None:
            logger.info("reschedule_transition_refused", extra={"proposal_id": proposal_id, "action": "modify"})
            return False

        try:
            tasks = await self.schedule_store.get_tasks(proposal.schedule_id)
        except BaseException:
            await self.proposal_store.release(proposal.id)
            raise
        known = {t.id for t in tasks}
        unknown = [c.task_id for c in modifications if c.task_id not in known]
        if unknown:
            await self.proposal_store.release(proposal.id)
            raise InvalidModificationError(
                f"Tasks not in schedule {proposal.schedule_id}: {', '.join(unknown)}"
            )

        await self._apply_changes(proposal.id, modifications)
        await self.proposal_store.finish(proposal.id, ProposalStatus.modified, proposed_changes=modifications)
        logger.info("reschedule_proposal_modified", extra={"proposal_id": proposal.id, "changes": len(modifications)})
        return True

    async def _apply_changes(self, proposal_id: str, changes: Sequence[ProposedChange]) -> None:
        """
        One write per task, in order. Not transactional: on failure the tasks
        already written stay written and the proposal stays claimed. A failure or
        cancellation before the first write hands the proposal back to pending.
        """
        applied: List[str] = []
        for change in changes:
            try:
                await self.schedule_store.update_task_dates(
                    change.task_id, change.proposed_start_date, change.proposed_end_date
                )
            except BaseException as exc:
                remaining = [c.task_id for c in changes[len(applied):]]
                logger.error(
                    "reschedule_apply_failed",
                    extra={
                        "proposal_id": proposal_id,
                        "applied": applied,
                        "failed_task_id": change.task_id,
                        "not_applied": remaining,
                        "error": str(exc) or type(exc).__name__,
                    },
                )
                if not applied:
                    await self.proposal_store.release(proposal_id)
                if not isinstance(exc, Exception):
                    # cancellation propagates unwrapped
                    raise
                raise ApplyChangesError(proposal_id, applied, change.task_id) from exc
            applied.append(change.task_id)

        if changes:
            self.background.spawn(self._log_applied(list(changes)), name=f"activity:{proposal_id}")

    async def _log_applied(self, changes: List[ProposedChange]) -> None:
        for change in changes:
            await self.schedule_store.log_activity(
                change.task_id,
                "auto-rescheduled",
                field="dates",
                old_value=f"{_fmt(change.current_start_date)} - {_fmt(change.current_end_date)}",
                new_value=f"{change.proposed_start_date.isoformat()} - {change.proposed_end_date.isoformat()}",
            )

    def usage(self):
        return self.completion_client.get_usage_stats()


def _fmt(value) -> str:
    return value.isoformat() if value else "?"
