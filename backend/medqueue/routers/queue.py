"""
Queue and token management API routes.
"""

from datetime import date
from typing import List, Optional
from fastapi import APIRouter, HTTPException, status, Depends, Query

from ..models.queue import (
    QueueToken,
    QueueTokenCreate,
    QueueDisplay,
    QueueCallRequest,
    QueueUpdateRequest,
    EstimateRefreshRequest,
    CounterCreate,
    CounterStatusUpdate,
    DoctorStatusBoard
)
from ..models.institution import Counter
from ..models.user import User
from ..services.queue_service import QueueService
from .dependencies import get_current_user, require_admin, require_staff

router = APIRouter(prefix="/queue", tags=["Queue & Tokens"])


@router.post("/tokens", response_model=QueueToken, response_model_by_alias=False, status_code=status.HTTP_201_CREATED)
async def issue_token(
    token_data: QueueTokenCreate,
    current_user: User = Depends(require_staff)
):
    """Issue a new queue token for a booking."""
    return await QueueService.issue_token(current_user.institution_id, token_data, current_user.id)


@router.get("/display", response_model=QueueDisplay, response_model_by_alias=False)
async def get_queue_display(
    day: Optional[date] = Query(None, alias="date"),
    department: Optional[str] = None,
    doctor_id: Optional[str] = None,
    shift_name: Optional[str] = None,
    current_user: User = Depends(get_current_user)
):
    """Get current queue status for a display board."""
    return await QueueService.get_queue_display(
        current_user.institution_id,
        day or date.today(),
        department=department,
        doctor_id=doctor_id,
        shift_name=shift_name
    )


@router.post("/call-next", response_model=QueueToken, response_model_by_alias=False)
async def call_next_patient(
    request: QueueCallRequest,
    current_user: User = Depends(require_staff)
):
    """Call the next waiting patient to a counter."""
    token = await QueueService.call_next(current_user.institution_id, request, current_user.id)

    if not token:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No patients waiting in queue"
        )

    return token


@router.get("/department/{department}", response_model=List[QueueToken], response_model_by_alias=False)
async def get_department_queue(
    department: str,
    day: Optional[date] = Query(None, alias="date"),
    current_user: User = Depends(get_current_user)
):
    """Live queue of a department, ignoring finished tokens."""
    return await QueueService.get_live_queue(
        current_user.institution_id, day or date.today(), department
    )


@router.get("/action-required", response_model=List[QueueToken], response_model_by_alias=False)
async def get_action_required(
    day: Optional[date] = Query(None, alias="date"),
    current_user: User = Depends(require_staff)
):
    """Cancelled tokens waiting for manual re-booking."""
    return await QueueService.list_action_required(current_user.institution_id, day)


@router.post("/action-required/{token_id}/resolve", response_model=QueueToken, response_model_by_alias=False)
async def resolve_action(
    token_id: str,
    current_user: User = Depends(require_staff)
):
    return await QueueService.resolve_action(current_user.institution_id, token_id)


@router.get("/tokens/{token_id}", response_model=QueueToken, response_model_by_alias=False)
async def get_token(
    token_id: str,
    current_user: User = Depends(get_current_user)
):
    """Get token by ID."""
    return await QueueService.get_token(current_user.institution_id, token_id)


@router.put("/tokens/{token_id}/status", response_model=QueueToken, response_model_by_alias=False)
async def update_token_status(
    token_id: str,
    request: QueueUpdateRequest,
    current_user: User = Depends(require_staff)
):
    """Move a token to a new status."""
    return await QueueService.transition(
        current_user.institution_id,
        token_id,
        request.status,
        request.notes
    )


@router.post("/estimates/refresh")
async def refresh_estimates(
    request: EstimateRefreshRequest,
    current_user: User = Depends(require_staff)
):
    """Recompute ETAs of pending tokens for one doctor shift."""
    refreshed = await QueueService.refresh_estimates(
        current_user.institution_id,
        request.doctor_id,
        request.date,
        request.shift_name
    )
    return {"refreshed_token_ids": refreshed}


@router.get("/status/{doctor_id}", response_model=DoctorStatusBoard)
async def get_doctor_status(
    doctor_id: str,
    day: Optional[date] = Query(None, alias="date"),
    current_user: User = Depends(get_current_user)
):
    """Running token and delay of a doctor for the waiting room screen."""
    return await QueueService.get_doctor_status(
        current_user.institution_id, doctor_id, day or date.today()
    )


@router.get("/counters", response_model=List[Counter])
async def list_counters(current_user: User = Depends(get_current_user)):
    """Service desks, so the front end knows which counters exist."""
    return await QueueService.list_counters(current_user.institution_id)


@router.post("/counters", response_model=Counter, status_code=status.HTTP_201_CREATED)
async def add_counter(
    counter_data: CounterCreate,
    current_user: User = Depends(require_admin)
):
    return await QueueService.add_counter(current_user.institution_id, counter_data)


@router.put("/counters/{counter_id}/status", response_model=Counter)
async def update_counter_status(
    counter_id: str,
    request: CounterStatusUpdate,
    current_user: User = Depends(require_staff)
):
    """Open, pause or close a desk."""
    return await QueueService.set_counter_status(
        current_user.institution_id, counter_id, request.status, staff_id=current_user.id
    )
