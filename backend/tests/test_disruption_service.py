"""
Tests for doctor overrides, leave quota and the cascade onto issued tokens.
"""

from datetime import date, datetime

import pytest

from medqueue.database import Database
from medqueue.exceptions import ConcurrencyConflict, PersistenceError, QuotaExceeded, ValidationError
from medqueue.models.institution import CascadePolicy
from medqueue.models.live_shift import LiveShiftStatus
from medqueue.models.queue import QueueTokenCreate, TokenStatus
from medqueue.models.schedule import DailyOverride, ShiftScope
from medqueue.services.disruption_service import (
    DisruptionClass,
    DisruptionService,
    classify
)
from medqueue.services.doctor_service import DoctorService
from medqueue.services.live_shift_service import LiveShiftService
from medqueue.services.queue_service import QueueService

from conftest import INSTITUTION_ID, MONDAY, SUNDAY, TUESDAY, set_institution_policies


def booking(doctor, shift_name="Morning", name="Ravi Kumar"):
    return QueueTokenCreate(
        date=MONDAY,
        department="Consultation",
        doctor_id=doctor.doctor_id,
        shift_name=shift_name,
        patient={"name": name}
    )


def whole_day_cancel(day=MONDAY, note=None):
    return DailyOverride(date=day, is_cancelled=True, note=note)


def shift_cancel(*names, day=MONDAY):
    return DailyOverride(date=day, scope=ShiftScope(shift_names=set(names)), is_cancelled=True)


async def set_leaves_taken(doctor, taken):
    doctors = await Database.get_tenant_collection(INSTITUTION_ID, "doctors")
    await doctors.update_one({"doctor_id": doctor.doctor_id}, {"$set": {"metrics.leaves_taken": taken}})


class TestClassify:

    def test_delay(self):
        override = DailyOverride(date=MONDAY, delay_minutes=20)
        assert classify(override, {"Morning", "Evening"}) == DisruptionClass.DELAY

    def test_whole_day(self):
        assert classify(whole_day_cancel(), {"Morning", "Evening"}) == DisruptionClass.FULL_DAY_LEAVE

    def test_every_shift_named_counts_as_full_day(self):
        override = shift_cancel("Morning", "Evening")
        assert classify(override, {"Morning", "Evening"}) == DisruptionClass.FULL_DAY_LEAVE

    def test_single_shift(self):
        assert classify(shift_cancel("Morning"), {"Morning", "Evening"}) == DisruptionClass.SHIFT_CANCELLATION

    def test_override_needs_an_effect(self):
        with pytest.raises(ValueError):
            DailyOverride(date=MONDAY)


class TestLeaveQuota:

    async def test_leave_rejected_when_limit_reached(self, db, doctor):
        await set_leaves_taken(doctor, 12)

        with pytest.raises(QuotaExceeded) as exc_info:
            await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, whole_day_cancel())

        assert exc_info.value.leaves_taken == 12
        assert exc_info.value.leave_limit == 12
        stored = await DoctorService.get_doctor(INSTITUTION_ID, doctor.doctor_id)
        assert stored.metrics.leaves_taken == 12
        assert stored.daily_overrides == []

    async def test_leave_counted_when_within_limit(self, db, doctor):
        await set_leaves_taken(doctor, 11)

        result = await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, whole_day_cancel())

        assert result.classification == DisruptionClass.FULL_DAY_LEAVE
        stored = await DoctorService.get_doctor(INSTITUTION_ID, doctor.doctor_id)
        assert stored.metrics.leaves_taken == 12
        assert stored.version == doctor.version + 1

    async def test_shift_cancellation_is_not_a_leave(self, db, doctor):
        await set_leaves_taken(doctor, 12)

        result = await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Evening"))

        assert result.classification == DisruptionClass.SHIFT_CANCELLATION
        stored = await DoctorService.get_doctor(INSTITUTION_ID, doctor.doctor_id)
        assert stored.metrics.leaves_taken == 12
        assert stored.metrics.cancellations_count == 1

    async def test_delay_counts_lateness(self, db, doctor):
        result = await DisruptionService.apply_override(
            INSTITUTION_ID, doctor.doctor_id, DailyOverride(date=MONDAY, delay_minutes=30)
        )

        assert result.classification == DisruptionClass.DELAY
        assert result.policy is None
        assert result.cascaded_token_ids == []
        stored = await DoctorService.get_doctor(INSTITUTION_ID, doctor.doctor_id)
        assert stored.metrics.late_count == 1

    async def test_resending_a_leave_counts_it_once(self, db, doctor):
        await set_leaves_taken(doctor, 11)

        await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, whole_day_cancel(note="Fever"))
        await DisruptionService.apply_override(
            INSTITUTION_ID, doctor.doctor_id, whole_day_cancel(note="Fever, resting at home")
        )

        stored = await DoctorService.get_doctor(INSTITUTION_ID, doctor.doctor_id)
        assert stored.metrics.leaves_taken == 12
        assert stored.override_for(MONDAY).note == "Fever, resting at home"

    async def test_changing_the_kind_of_disruption_counts_the_new_kind(self, db, doctor):
        await DisruptionService.apply_override(
            INSTITUTION_ID, doctor.doctor_id, DailyOverride(date=MONDAY, delay_minutes=20)
        )
        await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Evening"))
        await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Evening"))

        stored = await DoctorService.get_doctor(INSTITUTION_ID, doctor.doctor_id)
        assert stored.metrics.late_count == 1
        assert stored.metrics.cancellations_count == 1
        assert stored.metrics.leaves_taken == 0


class TestOverrideValidation:

    async def test_unknown_shift(self, db, doctor):
        with pytest.raises(ValidationError):
            await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Night"))

    async def test_day_off(self, db, doctor):
        with pytest.raises(ValidationError):
            await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, whole_day_cancel(SUNDAY))

    async def test_completed_shift_cannot_be_cancelled(self, db, doctor):
        await LiveShiftService.start_shift(INSTITUTION_ID, MONDAY, doctor.doctor_id, "Morning")
        await LiveShiftService.complete_shift(INSTITUTION_ID, MONDAY, doctor.doctor_id, "Morning")

        with pytest.raises(ValidationError):
            await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Morning"))

    async def test_new_override_replaces_same_date(self, db, doctor):
        await DisruptionService.apply_override(
            INSTITUTION_ID, doctor.doctor_id, DailyOverride(date=MONDAY, delay_minutes=15)
        )
        await DisruptionService.apply_override(
            INSTITUTION_ID, doctor.doctor_id, DailyOverride(date=MONDAY, delay_minutes=45)
        )

        stored = await DoctorService.get_doctor(INSTITUTION_ID, doctor.doctor_id)
        assert len(stored.daily_overrides) == 1
        assert stored.override_for(MONDAY).delay_minutes == 45
        assert stored.metrics.late_count == 1

    async def test_stale_doctor_record_conflicts(self, db, doctor, monkeypatch):
        stale = await DoctorService.get_doctor(INSTITUTION_ID, doctor.doctor_id)
        doctors = await Database.get_tenant_collection(INSTITUTION_ID, "doctors")
        await doctors.update_one({"doctor_id": doctor.doctor_id}, {"$inc": {"version": 1}})

        async def stale_doctor(institution_id, doctor_id):
            return stale

        monkeypatch.setattr(DoctorService, "get_doctor", stale_doctor)

        with pytest.raises(ConcurrencyConflict):
            await DisruptionService.apply_override(
                INSTITUTION_ID, doctor.doctor_id, DailyOverride(date=MONDAY, delay_minutes=10)
            )

        monkeypatch.undo()
        stored = await DoctorService.get_doctor(INSTITUTION_ID, doctor.doctor_id)
        assert stored.daily_overrides == []
        assert stored.metrics.late_count == 0


class TestCascade:

    async def test_auto_reschedule_moves_tokens_to_next_day(self, db, doctor):
        first = await QueueService.issue_token(INSTITUTION_ID, booking(doctor, name="A"))
        second = await QueueService.issue_token(INSTITUTION_ID, booking(doctor, name="B"))
        evening = await QueueService.issue_token(INSTITUTION_ID, booking(doctor, "Evening", name="C"))

        result = await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Morning"))

        assert result.policy == CascadePolicy.AUTO_NEXT_AVAILABLE
        assert sorted(result.cascaded_token_ids) == sorted([first.id, second.id])
        for original in (first, second):
            moved = await QueueService.get_token(INSTITUTION_ID, original.id)
            assert moved.date == TUESDAY
            assert moved.original_date == MONDAY
            assert moved.is_rescheduled is True
            assert moved.priority == 1
            assert moved.status == TokenStatus.WAITING
            assert moved.token_number == original.token_number
            assert moved.sequence == original.sequence

        first_moved = await QueueService.get_token(INSTITUTION_ID, first.id)
        second_moved = await QueueService.get_token(INSTITUTION_ID, second.id)
        assert first_moved.estimated_start_time == datetime(2025, 6, 3, 9, 0)
        assert first_moved.estimated_time_display == "09:00 AM"
        assert second_moved.estimated_time_display == "09:15 AM"

        untouched = await QueueService.get_token(INSTITUTION_ID, evening.id)
        assert untouched.date == MONDAY
        assert untouched.is_rescheduled is False

        live = await LiveShiftService.get_shift(INSTITUTION_ID, MONDAY, doctor.doctor_id, "Morning")
        assert live.status == LiveShiftStatus.CANCELLED

    async def test_second_reschedule_keeps_the_first_date(self, db, doctor):
        token = await QueueService.issue_token(INSTITUTION_ID, booking(doctor))

        await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Morning"))
        await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Morning", day=TUESDAY))

        moved = await QueueService.get_token(INSTITUTION_ID, token.id)
        assert moved.date == date(2025, 6, 4)
        assert moved.original_date == MONDAY
        # Nothing runs on Wednesday
        assert moved.estimated_start_time is None
        assert moved.estimated_time_display is None

    async def test_cancel_all_policy(self, db, doctor):
        await set_institution_policies(full_day=CascadePolicy.CANCEL_ALL.value)
        token = await QueueService.issue_token(INSTITUTION_ID, booking(doctor))

        result = await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, whole_day_cancel())

        assert result.policy == CascadePolicy.CANCEL_ALL
        cancelled = await QueueService.get_token(INSTITUTION_ID, token.id)
        assert cancelled.status == TokenStatus.CANCELLED
        assert cancelled.is_rescheduled is False
        assert cancelled.action_required is False

    async def test_manual_policy_flags_tokens_for_rebooking(self, db, doctor):
        await set_institution_policies(shift=CascadePolicy.MANUAL_ALLOCATION.value)
        token = await QueueService.issue_token(INSTITUTION_ID, booking(doctor))

        await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Morning"))

        flagged = await QueueService.list_action_required(INSTITUTION_ID, MONDAY)
        assert [t.id for t in flagged] == [token.id]
        assert flagged[0].status == TokenStatus.CANCELLED

        resolved = await QueueService.resolve_action(INSTITUTION_ID, token.id)
        assert resolved.action_required is False
        assert await QueueService.list_action_required(INSTITUTION_ID) == []

    async def test_finished_tokens_are_left_alone(self, db, doctor):
        await set_institution_policies(shift=CascadePolicy.CANCEL_ALL.value)
        served = await QueueService.issue_token(INSTITUTION_ID, booking(doctor, name="A"))
        held = await QueueService.issue_token(INSTITUTION_ID, booking(doctor, name="B"))
        for status in (TokenStatus.CALLED, TokenStatus.IN_PROGRESS, TokenStatus.COMPLETED):
            await QueueService.transition(INSTITUTION_ID, served.id, status)
        await QueueService.transition(INSTITUTION_ID, held.id, TokenStatus.HOLD)

        result = await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Morning"))

        assert result.cascaded_token_ids == [held.id]
        assert (await QueueService.get_token(INSTITUTION_ID, served.id)).status == TokenStatus.COMPLETED
        assert (await QueueService.get_token(INSTITUTION_ID, held.id)).status == TokenStatus.CANCELLED

    async def test_rerunning_a_job_changes_nothing(self, db, doctor):
        token = await QueueService.issue_token(INSTITUTION_ID, booking(doctor))
        job = {
            "job_id": "job-1",
            "date": MONDAY.isoformat(),
            "shift_names": ["Morning"],
            "policy": CascadePolicy.AUTO_NEXT_AVAILABLE.value,
            "note": "Doctor unavailable"
        }

        assert await DisruptionService.run_cascade(INSTITUTION_ID, doctor.doctor_id, job) == [token.id]
        assert await DisruptionService.run_cascade(INSTITUTION_ID, doctor.doctor_id, job) == []

        moved = await QueueService.get_token(INSTITUTION_ID, token.id)
        assert moved.date == date(2025, 6, 3)
        assert moved.original_date == MONDAY

    async def test_failed_cascade_stays_in_outbox(self, db, doctor, monkeypatch):
        token = await QueueService.issue_token(INSTITUTION_ID, booking(doctor))

        async def failing(institution_id, doctor_id, job):
            raise PersistenceError("store went away")

        monkeypatch.setattr(DisruptionService, "run_cascade", failing)
        result = await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Morning"))
        monkeypatch.undo()

        assert result.cascade_pending is True
        doctors = await Database.get_tenant_collection(INSTITUTION_ID, "doctors")
        doc = await doctors.find_one({"doctor_id": doctor.doctor_id})
        assert len(doc["cascade_outbox"]) == 1
        assert (await QueueService.get_token(INSTITUTION_ID, token.id)).date == MONDAY

        summary = await DisruptionService.process_pending_cascades(INSTITUTION_ID)

        assert list(summary["completed"].values()) == [1]
        assert summary["failed"] == {}
        assert (await QueueService.get_token(INSTITUTION_ID, token.id)).date == TUESDAY
        doc = await doctors.find_one({"doctor_id": doctor.doctor_id})
        assert doc["cascade_outbox"] == []


class TestDelayEstimates:

    async def test_delay_does_not_move_issued_estimates_until_refreshed(self, db, doctor):
        token = await QueueService.issue_token(INSTITUTION_ID, booking(doctor))
        assert token.estimated_time_display == "09:00 AM"

        await DisruptionService.apply_override(
            INSTITUTION_ID, doctor.doctor_id, DailyOverride(date=MONDAY, delay_minutes=30)
        )
        unchanged = await QueueService.get_token(INSTITUTION_ID, token.id)
        assert unchanged.estimated_time_display == "09:00 AM"

        refreshed = await QueueService.refresh_estimates(INSTITUTION_ID, doctor.doctor_id, MONDAY, "Morning")

        assert refreshed == [token.id]
        updated = await QueueService.get_token(INSTITUTION_ID, token.id)
        assert updated.estimated_time_display == "09:30 AM"

    async def test_cancelled_shift_blocks_new_bookings(self, db, doctor):
        await DisruptionService.apply_override(INSTITUTION_ID, doctor.doctor_id, shift_cancel("Morning"))

        with pytest.raises(ValidationError):
            await QueueService.issue_token(INSTITUTION_ID, booking(doctor))
