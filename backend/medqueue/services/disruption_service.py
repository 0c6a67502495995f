"""
Doctor disruptions: delay and cancellation overrides and their cascade
onto already issued tokens.

An accepted override is written together with a cascade job in the doctor's
``cascade_outbox``. The cascade then runs as a separate step and removes its
job when done; a job left behind is picked up by ``process_pending_cascades``.
Every cascade update is conditioned on the token still being pending on the
original date, so running a job twice changes nothing the second time.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel
from pymongo.errors import PyMongoError

from ..config import get_settings
from ..database import Database
from ..exceptions import (
    ConcurrencyConflict,
    InvalidTransition,
    PersistenceError,
    QuotaExceeded,
    SchedulingError,
    ValidationError
)
from ..models.doctor import Doctor
from ..models.institution import CascadePolicy, Institution
from ..models.live_shift import LiveShiftStatus
from ..models.queue import PENDING_STATUSES, TokenStatus
from ..models.schedule import DailyOverride, ShiftScope
from .doctor_service import DoctorService
from .eta_service import ArrivalEstimate, estimate_arrival
from .live_shift_service import LiveShiftService
from .notification_service import (
    EventType,
    NotificationService,
    department_channel,
    doctor_channel
)

settings = get_settings()
logger = logging.getLogger(__name__)


class DisruptionClass(str, Enum):
    FULL_DAY_LEAVE = "FULL_DAY_LEAVE"
    SHIFT_CANCELLATION = "SHIFT_CANCELLATION"
    DELAY = "DELAY"


METRIC_FOR_CLASS = {
    DisruptionClass.FULL_DAY_LEAVE: "leaves_taken",
    DisruptionClass.SHIFT_CANCELLATION: "cancellations_count",
    DisruptionClass.DELAY: "late_count",
}


class OverrideResult(BaseModel):
    override: DailyOverride
    classification: DisruptionClass
    policy: Optional[CascadePolicy] = None
    cascaded_token_ids: List[str] = []
    cascade_pending: bool = False


def classify(override: DailyOverride, running_shifts: Set[str]) -> DisruptionClass:
    """A cancellation covering every shift of the day is a full-day leave."""
    if not override.is_cancelled:
        return DisruptionClass.DELAY
    if override.is_whole_day or running_shifts <= override.scope.shift_names:
        return DisruptionClass.FULL_DAY_LEAVE
    return DisruptionClass.SHIFT_CANCELLATION


def resolve_policy(institution: Institution, classification: DisruptionClass) -> CascadePolicy:
    """Whole-day and shift-level policies are configured independently."""
    queue_settings = institution.settings.queue
    if classification == DisruptionClass.FULL_DAY_LEAVE:
        return queue_settings.full_day_cancellation_policy or CascadePolicy(settings.DEFAULT_FULL_DAY_POLICY)
    return queue_settings.shift_cancellation_policy or CascadePolicy(settings.DEFAULT_SHIFT_POLICY)


def _cascade_update(policy: CascadePolicy, doctor: Doctor, token: dict, note: str, now: datetime) -> dict:
    if policy == CascadePolicy.AUTO_NEXT_AVAILABLE:
        next_day = date.fromisoformat(token["date"]) + timedelta(days=1)
        update = {
            "date": next_day.isoformat(),
            "original_date": token.get("original_date") or token["date"],
            "is_rescheduled": True,
            "priority": 1,
            "status": TokenStatus.WAITING.value,
            "estimated_start_time": None,
            "estimated_time_display": None,
            "notes": note,
            "updated_at": now
        }
        # Estimate stays empty when the shift does not run on the new date
        if token.get("shift_name"):
            estimate = estimate_arrival(doctor, next_day, token["shift_name"], token["sequence"])
            if isinstance(estimate, ArrivalEstimate):
                update["estimated_start_time"] = estimate.timestamp
                update["estimated_time_display"] = estimate.formatted
                update["is_overbooked"] = estimate.is_overbooked
        return update

    update = {
        "status": TokenStatus.CANCELLED.value,
        "is_rescheduled": False,
        "notes": note,
        "updated_at": now
    }
    if policy == CascadePolicy.MANUAL_ALLOCATION:
        update["action_required"] = True
    return update


class DisruptionService:
    """Disruption propagator."""

    @classmethod
    async def apply_override(
        cls,
        institution_id: str,
        doctor_id: str,
        override: DailyOverride,
        applied_by: Optional[str] = None
    ) -> OverrideResult:
        """
        Record a delay or cancellation and cascade it to issued tokens.

        Full-day leaves are checked against the yearly limit. The override,
        the metric increment and the cascade job are one conditional write
        on the doctor's version; losing that race raises ConcurrencyConflict
        and nothing is recorded.
        """
        doctor = await DoctorService.get_doctor(institution_id, doctor_id)
        day = override.date

        day_schedule = doctor.day_schedule(day)
        if day_schedule is None:
            raise ValidationError(f"{doctor.display_name} is not scheduled on {day.isoformat()}")

        running = day_schedule.shift_names
        if isinstance(override.scope, ShiftScope):
            unknown = override.scope.shift_names - running
            if unknown:
                raise ValidationError(
                    f"Unknown shift(s) on {day.isoformat()}: {', '.join(sorted(unknown))}"
                )
            affected = set(override.scope.shift_names)
        else:
            affected = set(running)

        classification = classify(override, running)
        previous = doctor.override_for(day)
        previous_class = classify(previous, running) if previous else None

        if override.is_cancelled:
            for shift_name in sorted(affected):
                live = await LiveShiftService.get_shift(institution_id, day, doctor_id, shift_name)
                if live is not None and live.status == LiveShiftStatus.COMPLETED:
                    raise ValidationError(f"Shift '{shift_name}' on {day.isoformat()} is already completed")

        if classification == DisruptionClass.FULL_DAY_LEAVE and previous_class != classification:
            taken = doctor.metrics.leaves_taken
            limit = doctor.leave_settings.leave_limit_per_year
            if taken >= limit:
                logger.warning("Leave for %s on %s rejected: %d/%d used", doctor_id, day, taken, limit)
                raise QuotaExceeded(taken, limit)

        job = None
        policy = None
        if override.is_cancelled:
            institution = Institution(**await Database.get_institution(institution_id))
            policy = resolve_policy(institution, classification)
            job = {
                "job_id": str(uuid.uuid4()),
                "date": day.isoformat(),
                "shift_names": None if classification == DisruptionClass.FULL_DAY_LEAVE else sorted(affected),
                "policy": policy.value,
                "note": override.note or f"Doctor unavailable on {day.isoformat()}",
                "cancelled_by": applied_by,
                "created_at": datetime.utcnow()
            }

        # Replacing an override of the same kind on the same date counts once
        increments = {"version": 1}
        if previous_class != classification:
            increments[f"metrics.{METRIC_FOR_CLASS[classification]}"] = 1

        overrides = [o for o in doctor.daily_overrides if o.date != day] + [override]
        update = {
            "$set": {
                "daily_overrides": [o.model_dump(mode="json") for o in overrides],
                "updated_at": datetime.utcnow()
            },
            "$inc": increments
        }
        if job:
            update["$push"] = {"cascade_outbox": job}

        doctors = await Database.get_tenant_collection(institution_id, "doctors")
        try:
            result = await doctors.update_one(
                {"doctor_id": doctor_id, "institution_id": institution_id, "version": doctor.version},
                update
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not record override: {e}") from e

        if result.modified_count == 0:
            raise ConcurrencyConflict(f"Doctor '{doctor_id}' was modified concurrently; retry the override")

        logger.info(
            "Override accepted for %s on %s: %s (delay=%d)",
            doctor_id, day, classification.value, override.delay_minutes
        )
        NotificationService.publish(doctor_channel(doctor_id), EventType.OVERRIDE_APPLIED, {
            "override": override.model_dump(mode="json"),
            "classification": classification.value
        })

        outcome = OverrideResult(override=override, classification=classification, policy=policy)
        if job:
            try:
                outcome.cascaded_token_ids = await cls.run_cascade(institution_id, doctor_id, job)
            except SchedulingError as e:
                logger.warning("Cascade %s for %s left in outbox: %s", job["job_id"], doctor_id, e)
                outcome.cascade_pending = True
        return outcome

    @classmethod
    async def run_cascade(cls, institution_id: str, doctor_id: str, job: dict) -> List[str]:
        """Apply one cascade job to the affected tokens, then clear it from the outbox."""
        policy = CascadePolicy(job["policy"])
        day = date.fromisoformat(job["date"])
        pending_values = [s.value for s in PENDING_STATUSES]

        query = {
            "institution_id": institution_id,
            "doctor_id": doctor_id,
            "date": job["date"],
            "status": {"$in": pending_values}
        }
        if job.get("shift_names"):
            query["shift_name"] = {"$in": job["shift_names"]}

        doctor = await DoctorService.get_doctor(institution_id, doctor_id)
        tokens = await Database.get_tenant_collection(institution_id, "queue_tokens")
        cascaded = []
        departments = set()
        try:
            async for token in tokens.find(query).sort("sequence", 1):
                update = _cascade_update(policy, doctor, token, job["note"], datetime.utcnow())
                result = await tokens.update_one(
                    {"_id": token["_id"], "date": job["date"], "status": {"$in": pending_values}},
                    {"$set": update}
                )
                if result.modified_count:
                    cascaded.append(str(token["_id"]))
                    departments.add(token["department"])
        except PyMongoError as e:
            raise PersistenceError(f"Cascade {job['job_id']} failed midway: {e}") from e

        await cls._cancel_live_shifts(institution_id, doctor, day, job)

        doctors = await Database.get_tenant_collection(institution_id, "doctors")
        try:
            await doctors.update_one(
                {"doctor_id": doctor_id, "institution_id": institution_id},
                {"$pull": {"cascade_outbox": {"job_id": job["job_id"]}}}
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not clear cascade job {job['job_id']}: {e}") from e

        logger.info(
            "Cascade %s (%s) for %s on %s touched %d token(s)",
            job["job_id"], policy.value, doctor_id, job["date"], len(cascaded)
        )
        if cascaded:
            payload = {
                "doctor_id": doctor_id,
                "date": job["date"],
                "policy": policy.value,
                "token_ids": cascaded
            }
            NotificationService.publish(doctor_channel(doctor_id), EventType.TOKENS_CASCADED, payload)
            for department in departments:
                NotificationService.publish(department_channel(department), EventType.TOKENS_CASCADED, payload)
        return cascaded

    @classmethod
    async def _cancel_live_shifts(cls, institution_id: str, doctor: Doctor, day: date, job: dict):
        doctor_id = doctor.doctor_id
        day_schedule = doctor.day_schedule(day)
        if day_schedule is None:
            return

        names = job.get("shift_names") or sorted(day_schedule.shift_names)
        for shift_name in names:
            shift = day_schedule.get_shift(shift_name)
            if shift is None:
                continue
            try:
                await LiveShiftService.cancel_shift(
                    institution_id, day, doctor_id, shift_name,
                    reason=job["note"], cancelled_by=job.get("cancelled_by"), shift=shift
                )
            except InvalidTransition as e:
                logger.warning("Live shift %s of %s not cancelled: %s", shift_name, doctor_id, e)

    @classmethod
    async def process_pending_cascades(cls, institution_id: str) -> Dict[str, object]:
        """Re-run every cascade job still sitting in a doctor's outbox."""
        doctors = await Database.get_tenant_collection(institution_id, "doctors")
        summary: Dict[str, object] = {"completed": {}, "failed": {}}

        pending = []
        try:
            async for doc in doctors.find(
                {"institution_id": institution_id, "cascade_outbox": {"$exists": True, "$ne": []}}
            ):
                pending.append(doc)
        except PyMongoError as e:
            raise PersistenceError(f"Could not read cascade outbox: {e}") from e

        for doc in pending:
            for job in doc.get("cascade_outbox", []):
                try:
                    cascaded = await cls.run_cascade(institution_id, doc["doctor_id"], job)
                    summary["completed"][job["job_id"]] = len(cascaded)
                except SchedulingError as e:
                    logger.warning("Cascade %s failed again: %s", job["job_id"], e)
                    summary["failed"][job["job_id"]] = e.message
        return summary
