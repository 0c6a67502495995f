"""
Doctor scheduling records: the availability the engine schedules against.
"""

import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Iterable, List, Optional

from pymongo.errors import PyMongoError

from ..database import Database
from ..exceptions import NotFound, PersistenceError, ValidationError
from ..models.doctor import Doctor, DoctorCreate, ScheduleUpdate
from ..models.schedule import DaySchedule, Shift, SpecialShift

logger = logging.getLogger(__name__)

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _shift_conflict(shifts: List[Shift], label: str) -> Optional[str]:
    ordered = sorted(shifts, key=lambda s: s.start_time)
    for current, following in zip(ordered, ordered[1:]):
        if current.end_time > following.start_time:
            return (
                f"Overlapping shifts on {label} between "
                f"'{current.shift_name}' and '{following.shift_name}'"
            )

    names = [s.shift_name for s in shifts]
    if len(names) != len(set(names)):
        return f"Duplicate shift names on {label}"
    return None


def find_schedule_conflict(
    schedule: List[DaySchedule],
    special_shifts: Iterable[SpecialShift] = ()
) -> Optional[str]:
    """
    Describe the first overlapping shift pair or duplicated weekday, if any.

    Special shifts are checked together with the weekly shifts that run on
    their date.
    """
    seen_days = set()
    for day in schedule:
        if day.day_of_week in seen_days:
            return f"{DAY_NAMES[day.day_of_week]} is defined more than once"
        seen_days.add(day.day_of_week)

        if not day.is_available or len(day.shifts) < 2:
            continue

        conflict = _shift_conflict(day.shifts, DAY_NAMES[day.day_of_week])
        if conflict:
            return conflict

    by_date = defaultdict(list)
    for special in special_shifts:
        by_date[special.date].append(special.as_shift())

    weekly = {d.day_of_week: d for d in schedule if d.is_available}
    for target_date in sorted(by_date):
        week_of_month = (target_date.day - 1) // 7 + 1
        day = weekly.get(target_date.weekday())
        shifts = [s for s in day.shifts if s.runs_in_week(week_of_month)] if day else []

        conflict = _shift_conflict(shifts + by_date[target_date], target_date.isoformat())
        if conflict:
            return conflict
    return None


class DoctorService:
    """Doctor scheduling record service."""

    @classmethod
    async def create_doctor(cls, institution_id: str, doctor_data: DoctorCreate) -> Doctor:
        """Create a doctor, rejecting schedules with overlapping shifts."""
        conflict = find_schedule_conflict(doctor_data.schedule, doctor_data.special_shifts)
        if conflict:
            raise ValidationError(conflict)

        doctors = await Database.get_tenant_collection(institution_id, "doctors")
        doctor = Doctor(
            **doctor_data.model_dump(),
            doctor_id=str(uuid.uuid4()),
            institution_id=institution_id,
            created_at=datetime.utcnow()
        )

        doctor_doc = doctor.model_dump(mode="json")
        doctor_doc["created_at"] = doctor.created_at

        try:
            await doctors.insert_one(doctor_doc)
        except PyMongoError as e:
            raise PersistenceError(f"Could not save doctor: {e}") from e

        logger.info("Created doctor %s for institution %s", doctor.doctor_id, institution_id)
        return doctor

    @classmethod
    async def get_doctor(cls, institution_id: str, doctor_id: str) -> Doctor:
        """Get an active doctor by id."""
        doctors = await Database.get_tenant_collection(institution_id, "doctors")
        try:
            doc = await doctors.find_one({
                "doctor_id": doctor_id,
                "institution_id": institution_id,
                "is_active": True
            })
        except PyMongoError as e:
            raise PersistenceError(f"Could not load doctor: {e}") from e

        if not doc:
            raise NotFound(f"Doctor '{doctor_id}' not found")

        doc.pop("_id", None)
        return Doctor(**doc)

    @classmethod
    async def update_schedule(cls, institution_id: str, doctor_id: str, update: ScheduleUpdate) -> Doctor:
        """Replace the weekly schedule (and optionally special shifts and leaves)."""
        special_shifts = update.special_shifts
        if special_shifts is None:
            special_shifts = (await cls.get_doctor(institution_id, doctor_id)).special_shifts

        conflict = find_schedule_conflict(update.schedule, special_shifts)
        if conflict:
            raise ValidationError(conflict)

        update_data = {
            k: v for k, v in update.model_dump(mode="json").items() if v is not None
        }
        update_data["updated_at"] = datetime.utcnow()

        doctors = await Database.get_tenant_collection(institution_id, "doctors")
        try:
            result = await doctors.update_one(
                {"doctor_id": doctor_id, "institution_id": institution_id, "is_active": True},
                {"$set": update_data, "$inc": {"version": 1}}
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not update schedule: {e}") from e

        if result.matched_count == 0:
            raise NotFound(f"Doctor '{doctor_id}' not found")

        return await cls.get_doctor(institution_id, doctor_id)
