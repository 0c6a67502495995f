"""
Doctor availability, slot, ETA and override API routes.
"""

from datetime import date
from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..models.doctor import Doctor, DoctorCreate, ScheduleUpdate
from ..models.schedule import OverrideRequest
from ..models.user import User
from ..services.disruption_service import DisruptionService, OverrideResult
from ..services.doctor_service import DoctorService
from ..services.eta_service import CANCELLED, estimate_arrival
from ..services.slot_service import compute_slots
from .dependencies import get_current_user, require_admin, require_staff

router = APIRouter(prefix="/doctors", tags=["Doctors & Availability"])


@router.post("", response_model=Doctor, status_code=status.HTTP_201_CREATED)
async def create_doctor(
    doctor_data: DoctorCreate,
    current_user: User = Depends(require_admin)
):
    """Register a doctor's scheduling record."""
    return await DoctorService.create_doctor(current_user.institution_id, doctor_data)


@router.get("/{doctor_id}", response_model=Doctor)
async def get_doctor(
    doctor_id: str,
    current_user: User = Depends(get_current_user)
):
    return await DoctorService.get_doctor(current_user.institution_id, doctor_id)


@router.put("/{doctor_id}/schedule", response_model=Doctor)
async def update_schedule(
    doctor_id: str,
    update: ScheduleUpdate,
    current_user: User = Depends(require_admin)
):
    """Replace a doctor's weekly schedule. Overlapping shifts are rejected."""
    return await DoctorService.update_schedule(current_user.institution_id, doctor_id, update)


@router.get("/{doctor_id}/slots")
async def get_slots(
    doctor_id: str,
    date: date = Query(..., description="YYYY-MM-DD"),
    current_user: User = Depends(get_current_user)
):
    """Bookable slot start times for a date."""
    doctor = await DoctorService.get_doctor(current_user.institution_id, doctor_id)
    slots = compute_slots(
        doctor.day_schedule(date),
        doctor.consultation_rules.slot_duration_minutes
    )
    return {
        "doctor_id": doctor_id,
        "date": date.isoformat(),
        "slots": [slot.strftime("%H:%M") for slot in slots]
    }


@router.get("/{doctor_id}/eta")
async def get_eta(
    doctor_id: str,
    date: date = Query(..., description="YYYY-MM-DD"),
    shift_name: str = Query(...),
    position: int = Query(..., ge=1),
    current_user: User = Depends(get_current_user)
):
    """Estimated arrival time for a queue position."""
    doctor = await DoctorService.get_doctor(current_user.institution_id, doctor_id)
    estimate = estimate_arrival(doctor, date, shift_name, position)

    if estimate is None:
        return {"available": False, "cancelled": False, "estimate": None}
    if estimate is CANCELLED:
        return {"available": False, "cancelled": True, "estimate": None}
    return {"available": True, "cancelled": False, "estimate": estimate.model_dump(mode="json")}


@router.post("/{doctor_id}/overrides", response_model=OverrideResult)
async def apply_override(
    doctor_id: str,
    request: OverrideRequest,
    current_user: User = Depends(require_staff)
):
    """Declare a delay or cancellation and cascade it to issued tokens."""
    try:
        override = request.to_override()
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    return await DisruptionService.apply_override(
        current_user.institution_id,
        doctor_id,
        override,
        applied_by=current_user.id
    )


@router.post("/cascades/retry")
async def retry_cascades(current_user: User = Depends(require_admin)):
    """Re-run cascade jobs that did not finish."""
    return await DisruptionService.process_pending_cascades(current_user.institution_id)
