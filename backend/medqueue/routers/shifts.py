"""
Live shift API routes.
"""

from datetime import date
from typing import List, Optional
from fastapi import APIRouter, Depends, Query

from ..models.live_shift import LiveShift, ShiftActionRequest
from ..models.user import User
from ..services.live_shift_service import LiveShiftService
from .dependencies import get_current_user, require_doctor, require_staff

router = APIRouter(prefix="/shifts", tags=["Live Shifts"])


@router.post("/start", response_model=LiveShift, response_model_by_alias=False)
async def start_shift(
    request: ShiftActionRequest,
    current_user: User = Depends(require_doctor)
):
    """Mark a shift as running. Repeated starts return the running shift."""
    return await LiveShiftService.start_shift(
        current_user.institution_id,
        request.date,
        request.doctor_id,
        request.shift_name,
        started_by=current_user.id
    )


@router.post("/complete", response_model=LiveShift, response_model_by_alias=False)
async def complete_shift(
    request: ShiftActionRequest,
    current_user: User = Depends(require_doctor)
):
    return await LiveShiftService.complete_shift(
        current_user.institution_id,
        request.date,
        request.doctor_id,
        request.shift_name
    )


@router.post("/cancel", response_model=LiveShift, response_model_by_alias=False)
async def cancel_shift(
    request: ShiftActionRequest,
    current_user: User = Depends(require_staff)
):
    return await LiveShiftService.cancel_shift(
        current_user.institution_id,
        request.date,
        request.doctor_id,
        request.shift_name,
        reason=request.reason or "",
        cancelled_by=current_user.id
    )


@router.get("", response_model=List[LiveShift], response_model_by_alias=False)
async def list_shifts(
    day: Optional[date] = Query(None, alias="date"),
    doctor_id: Optional[str] = None,
    current_user: User = Depends(get_current_user)
):
    """Live shifts of a day for dashboards."""
    return await LiveShiftService.list_shifts(
        current_user.institution_id, day or date.today(), doctor_id
    )
