"""
Proposal store: owns every reschedule proposal, keyed by id. Never deletes.

Transitions go through ``claim``: an atomic pending -> applying swap that only one
caller can win, so two concurrent accepts on the same proposal cannot both apply.
"""

import asyncio
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from replanner.db import async_session
from replanner.models import RescheduleProposalRecord, as_utc
from replanner.schemas.reschedule import ProposalStatus, ProposedChange, RescheduleProposal

TERMINAL_STATUSES = (ProposalStatus.accepted, ProposalStatus.rejected, ProposalStatus.modified)


class ProposalStore(Protocol):
    async def add(self, proposal: RescheduleProposal) -> RescheduleProposal: ...

    async def get(self, proposal_id: str) -> Optional[RescheduleProposal]: ...

    async def list_for_schedule(self, schedule_id: str) -> List[RescheduleProposal]: ...

    async def claim(self, proposal_id: str) -> Optional[RescheduleProposal]: ...

    async def finish(
        self,
        proposal_id: str,
        status: ProposalStatus,
        feedback: Optional[str] = None,
        proposed_changes: Optional[Sequence[ProposedChange]] = None,
    ) -> RescheduleProposal: ...

    async def release(self, proposal_id: str) -> None: ...


class InMemoryProposalStore:
    """Single-process store. Returns copies so callers never mutate stored state."""

    def __init__(self):
        self._proposals: Dict[str, RescheduleProposal] = {}
        self._lock = asyncio.Lock()

    async def add(self, proposal: RescheduleProposal) -> RescheduleProposal:
        async with self._lock:
            if proposal.id in self._proposals:
                raise ValueError(f"Proposal {proposal.id} already exists")
            self._proposals[proposal.id] = proposal.model_copy(deep=True)
        return proposal

    async def get(self, proposal_id: str) -> Optional[RescheduleProposal]:
        proposal = self._proposals.get(proposal_id)
        return proposal.model_copy(deep=True) if proposal else None

    async def list_for_schedule(self, schedule_id: str) -> List[RescheduleProposal]:
        # newest inserted first, so equal timestamps still come back most-recent-first
        matching = [p for p in reversed(list(self._proposals.values())) if p.schedule_id == schedule_id]
        matching.sort(key=lambda p: p.created_at, reverse=True)
        return [p.model_copy(deep=True) for p in matching]

    async def claim(self, proposal_id: str) -> Optional[RescheduleProposal]:
        async with self._lock:
            proposal = self._proposals.get(proposal_id)
            if proposal is None or proposal.status != ProposalStatus.pending:
                return None
            proposal.status = ProposalStatus.applying
            return proposal.model_copy(deep=True)

    async def finish(self, proposal_id, status, feedback=None, proposed_changes=None) -> RescheduleProposal:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")
        async with self._lock:
            proposal = self._proposals[proposal_id]
            if proposal.status != ProposalStatus.applying:
                raise ValueError(f"Proposal {proposal_id} was not claimed")
            proposal.status = status
            if feedback is not None:
                proposal.feedback = feedback
            if proposed_changes is not None:
                proposal.proposed_changes = [c.model_copy() for c in proposed_changes]
            return proposal.model_copy(deep=True)

    async def release(self, proposal_id: str) -> None:
        async with self._lock:
            proposal = self._proposals.get(proposal_id)
            if proposal is not None and proposal.status == ProposalStatus.applying:
                proposal.status = ProposalStatus.pending


class SqlProposalStore:
    """
    Store over the ``reschedule_proposal`` table. The claim is a conditional
    UPDATE, so it holds across processes sharing the database.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] = async_session):
        self._session_factory = session_factory

    async def add(self, proposal: RescheduleProposal) -> RescheduleProposal:
        async with self._session_factory() as db:
            db.add(_to_record(proposal))
            await db.commit()
        return proposal

    async def get(self, proposal_id: str) -> Optional[RescheduleProposal]:
        async with self._session_factory() as db:
            record = await db.get(RescheduleProposalRecord, proposal_id)
        return _from_record(record) if record else None

    async def list_for_schedule(self, schedule_id: str) -> List[RescheduleProposal]:
        async with self._session_factory() as db:
            res = await db.execute(
                select(RescheduleProposalRecord)
                .where(RescheduleProposalRecord.schedule_id == schedule_id)
                .order_by(RescheduleProposalRecord.created_at.desc())
            )
            return [_from_record(r) for r in res.scalars().all()]

    async def claim(self, proposal_id: str) -> Optional[RescheduleProposal]:
        async with self._session_factory() as db:
            res = await db.execute(
                update(RescheduleProposalRecord)
                .where(RescheduleProposalRecord.id == proposal_id)
                .where(RescheduleProposalRecord.status == ProposalStatus.pending)
                .values(status=ProposalStatus.applying)
            )
            await db.commit()
            if res.rowcount != 1:
                return None
            record = await db.get(RescheduleProposalRecord, proposal_id, populate_existing=True)
            return _from_record(record)

    async def finish(self, proposal_id, status, feedback=None, proposed_changes=None) -> RescheduleProposal:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")
        values = {"status": status}
        if feedback is not None:
            values["feedback"] = feedback
        if proposed_changes is not None:
            values["proposed_changes"] = [c.model_dump(mode="json") for c in proposed_changes]

        async with self._session_factory() as db:
            res = await db.execute(
                update(RescheduleProposalRecord)
                .where(RescheduleProposalRecord.id == proposal_id)
                .where(RescheduleProposalRecord.status == ProposalStatus.applying)
                .values(**values)
            )
            await db.commit()
            if res.rowcount != 1:
                raise ValueError(f"Proposal {proposal_id} was not claimed")
            record = await db.get(RescheduleProposalRecord, proposal_id, populate_existing=True)
            return _from_record(record)

    async def release(self, proposal_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(RescheduleProposalRecord)
                .where(RescheduleProposalRecord.id == proposal_id)
                .where(RescheduleProposalRecord.status == ProposalStatus.applying)
                .values(status=ProposalStatus.pending)
            )
            await db.commit()


def _to_record(proposal: RescheduleProposal) -> RescheduleProposalRecord:
    data = proposal.model_dump(mode="json")
    return RescheduleProposalRecord(
        id=proposal.id,
        schedule_id=proposal.schedule_id,
        status=proposal.status,
        delayed_tasks=data["delayed_tasks"],
        proposed_changes=data["proposed_changes"],
        rationale=proposal.rationale,
        estimated_impact=data["estimated_impact"],
        created_at=as_utc(proposal.created_at),
        feedback=proposal.feedback,
    )


def _from_record(record: RescheduleProposalRecord) -> RescheduleProposal:
    return RescheduleProposal.model_validate(
        {
            "id": record.id,
            "schedule_id": record.schedule_id,
            "status": record.status,
            "delayed_tasks": record.delayed_tasks or [],
            "proposed_changes": record.proposed_changes or [],
            "rationale": record.rationale,
            "estimated_impact": record.estimated_impact,
            "created_at": as_utc(record.created_at),
            "feedback": record.feedback,
        }
    )
