"""
Live shift tracking: actual start/end and running counters of a doctor's shift.
"""

import logging
from datetime import date, datetime
from typing import Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..database import Database
from ..exceptions import InvalidTransition, PersistenceError, ValidationError
from ..models.doctor import Doctor
from ..models.live_shift import LiveShift, LiveShiftStatus
from ..models.schedule import Shift
from .doctor_service import DoctorService
from .notification_service import EventType, NotificationService, doctor_channel

logger = logging.getLogger(__name__)


def _key(institution_id: str, day: date, doctor_id: str, shift_name: str) -> dict:
    return {
        "institution_id": institution_id,
        "date": day.isoformat(),
        "doctor_id": doctor_id,
        "shift_name": shift_name
    }


def _to_model(doc: dict) -> LiveShift:
    doc["_id"] = str(doc["_id"])
    return LiveShift(**doc)


def resolve_shift(doctor: Doctor, day: date, shift_name: str) -> Shift:
    """The doctor's shift definition for a date, or ValidationError."""
    schedule = doctor.day_schedule(day)
    shift = schedule.get_shift(shift_name) if schedule else None
    if shift is None:
        raise ValidationError(
            f"{doctor.display_name} has no shift '{shift_name}' on {day.isoformat()}"
        )
    return shift


class LiveShiftService:
    """Live shift tracker."""

    @classmethod
    async def _collection(cls, institution_id: str):
        return await Database.get_tenant_collection(institution_id, "live_shifts")

    @classmethod
    async def ensure_shift(
        cls,
        institution_id: str,
        day: date,
        doctor_id: str,
        shift: Optional[Shift] = None,
        shift_name: Optional[str] = None,
        inc_booked: int = 0
    ) -> LiveShift:
        """
        Get or create the single record for (institution, date, doctor, shift).

        Creation is an upsert on the unique key, so concurrent callers end up
        with the same document.
        """
        name = shift.shift_name if shift else shift_name
        live_shifts = await cls._collection(institution_id)
        key = _key(institution_id, day, doctor_id, name)

        on_insert = {
            "status": LiveShiftStatus.PENDING.value,
            "planned_start_time": shift.start_time.strftime("%H:%M") if shift else None,
            "planned_end_time": shift.end_time.strftime("%H:%M") if shift else None,
            "actual_start_time": None,
            "actual_end_time": None,
            "max_tokens": shift.max_tokens if shift else 0,
            "tokens_completed": 0,
            "current_active_token_id": None,
            "started_by": None,
            "cancelled_by": None,
            "cancel_reason": "",
            "created_at": datetime.utcnow()
        }
        update = {"$setOnInsert": on_insert}
        if inc_booked:
            update["$inc"] = {"total_tokens_booked": inc_booked}
        else:
            on_insert["total_tokens_booked"] = 0

        for _ in range(2):
            try:
                doc = await live_shifts.find_one_and_update(
                    key, update, upsert=True, return_document=ReturnDocument.AFTER
                )
                return _to_model(doc)
            except DuplicateKeyError:
                continue
            except PyMongoError as e:
                raise PersistenceError(f"Could not record live shift: {e}") from e
        raise PersistenceError(f"Could not create live shift {key}")

    @classmethod
    async def get_shift(
        cls, institution_id: str, day: date, doctor_id: str, shift_name: str
    ) -> Optional[LiveShift]:
        live_shifts = await cls._collection(institution_id)
        try:
            doc = await live_shifts.find_one(_key(institution_id, day, doctor_id, shift_name))
        except PyMongoError as e:
            raise PersistenceError(f"Could not load live shift: {e}") from e
        return _to_model(doc) if doc else None

    @classmethod
    async def list_shifts(
        cls, institution_id: str, day: date, doctor_id: Optional[str] = None
    ) -> List[LiveShift]:
        """Live shifts of a day, for dashboards."""
        live_shifts = await cls._collection(institution_id)
        query = {"institution_id": institution_id, "date": day.isoformat()}
        if doctor_id:
            query["doctor_id"] = doctor_id

        results = []
        async for doc in live_shifts.find(query).sort("planned_start_time", 1):
            results.append(_to_model(doc))
        return results

    @classmethod
    async def _move(
        cls,
        institution_id: str,
        day: date,
        doctor_id: str,
        shift_name: str,
        allowed_from: Iterable[LiveShiftStatus],
        target: LiveShiftStatus,
        fields: dict
    ) -> Optional[LiveShift]:
        live_shifts = await cls._collection(institution_id)
        query = _key(institution_id, day, doctor_id, shift_name)
        query["status"] = {"$in": [s.value for s in allowed_from]}
        fields = dict(fields, status=target.value, updated_at=datetime.utcnow())
        try:
            doc = await live_shifts.find_one_and_update(
                query, {"$set": fields}, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not update live shift: {e}") from e
        return _to_model(doc) if doc else None

    @classmethod
    def _announce(cls, live_shift: LiveShift):
        NotificationService.publish(
            doctor_channel(live_shift.doctor_id),
            EventType.SHIFT_UPDATE,
            live_shift.model_dump(mode="json")
        )

    @classmethod
    async def start_shift(
        cls,
        institution_id: str,
        day: date,
        doctor_id: str,
        shift_name: str,
        started_by: Optional[str] = None
    ) -> LiveShift:
        """PENDING -> IN_PROGRESS. Starting an already running shift returns it unchanged."""
        doctor = await DoctorService.get_doctor(institution_id, doctor_id)
        shift = resolve_shift(doctor, day, shift_name)
        existing = await cls.ensure_shift(institution_id, day, doctor_id, shift)

        started = await cls._move(
            institution_id, day, doctor_id, shift_name,
            [LiveShiftStatus.PENDING], LiveShiftStatus.IN_PROGRESS,
            {"actual_start_time": datetime.utcnow(), "started_by": started_by}
        )
        if started is None:
            current = await cls.get_shift(institution_id, day, doctor_id, shift_name) or existing
            if current.status == LiveShiftStatus.IN_PROGRESS:
                return current
            raise InvalidTransition(current.status.value, LiveShiftStatus.IN_PROGRESS.value)

        logger.info("Shift %s of doctor %s started on %s", shift_name, doctor_id, day)
        cls._announce(started)
        return started

    @classmethod
    async def complete_shift(
        cls, institution_id: str, day: date, doctor_id: str, shift_name: str
    ) -> LiveShift:
        """IN_PROGRESS -> COMPLETED."""
        existing = await cls.get_shift(institution_id, day, doctor_id, shift_name)
        if existing is None:
            raise InvalidTransition(LiveShiftStatus.PENDING.value, LiveShiftStatus.COMPLETED.value,
                                    f"Shift '{shift_name}' was never started")

        completed = await cls._move(
            institution_id, day, doctor_id, shift_name,
            [LiveShiftStatus.IN_PROGRESS], LiveShiftStatus.COMPLETED,
            {"actual_end_time": datetime.utcnow(), "current_active_token_id": None}
        )
        if completed is None:
            current = await cls.get_shift(institution_id, day, doctor_id, shift_name)
            if current.status == LiveShiftStatus.COMPLETED:
                return current
            raise InvalidTransition(current.status.value, LiveShiftStatus.COMPLETED.value)

        logger.info("Shift %s of doctor %s completed on %s", shift_name, doctor_id, day)
        cls._announce(completed)
        return completed

    @classmethod
    async def cancel_shift(
        cls,
        institution_id: str,
        day: date,
        doctor_id: str,
        shift_name: str,
        reason: str = "",
        cancelled_by: Optional[str] = None,
        shift: Optional[Shift] = None
    ) -> LiveShift:
        """PENDING or IN_PROGRESS -> CANCELLED. Cancelling twice is a no-op."""
        if shift is None:
            doctor = await DoctorService.get_doctor(institution_id, doctor_id)
            shift = resolve_shift(doctor, day, shift_name)
        await cls.ensure_shift(institution_id, day, doctor_id, shift)

        cancelled = await cls._move(
            institution_id, day, doctor_id, shift_name,
            [LiveShiftStatus.PENDING, LiveShiftStatus.IN_PROGRESS], LiveShiftStatus.CANCELLED,
            {
                "actual_end_time": datetime.utcnow(),
                "cancel_reason": reason or "",
                "cancelled_by": cancelled_by
            }
        )
        if cancelled is None:
            current = await cls.get_shift(institution_id, day, doctor_id, shift_name)
            if current.status == LiveShiftStatus.CANCELLED:
                return current
            raise InvalidTransition(current.status.value, LiveShiftStatus.CANCELLED.value)

        logger.info("Shift %s of doctor %s cancelled on %s", shift_name, doctor_id, day)
        cls._announce(cancelled)
        return cancelled

    @classmethod
    async def record_completion(
        cls, institution_id: str, day: date, doctor_id: str, shift_name: str
    ):
        live_shifts = await cls._collection(institution_id)
        try:
            await live_shifts.update_one(
                _key(institution_id, day, doctor_id, shift_name),
                {"$inc": {"tokens_completed": 1}}
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not update completion counter: {e}") from e

    @classmethod
    async def set_active_token(
        cls, institution_id: str, day: date, doctor_id: str, shift_name: str, token_id: str
    ):
        live_shifts = await cls._collection(institution_id)
        try:
            await live_shifts.update_one(
                _key(institution_id, day, doctor_id, shift_name),
                {"$set": {"current_active_token_id": token_id}}
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not update active token: {e}") from e
