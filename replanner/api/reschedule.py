"""
Reschedule API: delay detection and the proposal lifecycle over RescheduleService.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from replanner.schemas.completion import UsageStats
from replanner.schemas.reschedule import DelayedTask, ProposedChange, RescheduleProposal
from replanner.services.completion_client import CompletionError
from replanner.services.reschedule_service import ApplyChangesError, InvalidModificationError, RescheduleService
from replanner.services.schedule_store import ScheduleNotFoundError

router = APIRouter(prefix="/reschedule", tags=["reschedule"])


class ProposeRequest(BaseModel):
    user_id: Optional[str] = None


class RejectRequest(BaseModel):
    feedback: Optional[str] = None


class ModifyRequest(BaseModel):
    modifications: List[ProposedChange]


def get_service(request: Request) -> RescheduleService:
    return request.app.state.reschedule_service


def _not_found(proposal_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Proposal {proposal_id} not found or already resolved")


@router.get("/schedules/{schedule_id}/delays", response_model=List[DelayedTask])
async def detect_delays(schedule_id: str, service: RescheduleService = Depends(get_service)):
    try:
        return await service.detect_delays(schedule_id)
    except ScheduleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/schedules/{schedule_id}/propose", response_model=RescheduleProposal)
async def generate_proposal(
    schedule_id: str,
    body: Optional[ProposeRequest] = None,
    service: RescheduleService = Depends(get_service),
):
    """Detect delays and ask the model for a pending proposal. Nothing is applied yet."""
    try:
        return await service.generate_proposal(schedule_id, body.user_id if body else None)
    except ScheduleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CompletionError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/schedules/{schedule_id}/proposals", response_model=List[RescheduleProposal])
async def list_proposals(schedule_id: str, service: RescheduleService = Depends(get_service)):
    return await service.get_proposals(schedule_id)


@router.post("/proposals/{proposal_id}/accept")
async def accept_proposal(proposal_id: str, service: RescheduleService = Depends(get_service)):
    try:
        ok = await service.accept_proposal(proposal_id)
    except ApplyChangesError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if not ok:
        raise _not_found(proposal_id)
    return {"status": "accepted", "proposal_id": proposal_id}


@router.post("/proposals/{proposal_id}/reject")
async def reject_proposal(
    proposal_id: str,
    body: Optional[RejectRequest] = None,
    service: RescheduleService = Depends(get_service),
):
    if not await service.reject_proposal(proposal_id, body.feedback if body else None):
        raise _not_found(proposal_id)
    return {"status": "rejected", "proposal_id": proposal_id}


@router.post("/proposals/{proposal_id}/modify")
async def modify_proposal(
    proposal_id: str,
    body: ModifyRequest,
    service: RescheduleService = Depends(get_service),
):
    try:
        ok = await service.modify_proposal(proposal_id, body.modifications)
    except InvalidModificationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ApplyChangesError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if not ok:
        raise _not_found(proposal_id)
    return {"status": "modified", "proposal_id": proposal_id}


@router.get("/usage", response_model=UsageStats)
async def usage(service: RescheduleService = Depends(get_service)):
    return service.usage()
