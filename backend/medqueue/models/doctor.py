"""
Doctor scheduling record models.
"""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .schedule import DailyOverride, DaySchedule, PlannedLeave, Shift, SpecialShift


class PersonalInfo(BaseModel):
    """Doctor name as shown on tokens and boards."""
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    gender: Optional[str] = None


class ConsultationRules(BaseModel):
    """Serial and queue rules used for slots and live ETA."""
    avg_time_per_patient_minutes: int = Field(default=15, ge=1, le=240)
    slot_duration_minutes: int = Field(default=15, ge=1, le=240)
    allow_overbooking: bool = False


class LeaveSettings(BaseModel):
    leave_limit_per_year: int = Field(default=20, ge=0)


class DoctorMetrics(BaseModel):
    """Disruption counters, only ever incremented."""
    leaves_taken: int = 0
    cancellations_count: int = 0
    late_count: int = 0


class DoctorBase(BaseModel):
    """Base doctor model."""
    personal_info: PersonalInfo
    specialization: Optional[str] = None
    department: str = "Consultation"
    consultation_rules: ConsultationRules = Field(default_factory=ConsultationRules)
    leave_settings: LeaveSettings = Field(default_factory=LeaveSettings)
    schedule: List[DaySchedule] = []
    special_shifts: List[SpecialShift] = []
    leaves: List[PlannedLeave] = []


class DoctorCreate(DoctorBase):
    """Doctor creation model."""
    pass


class ScheduleUpdate(BaseModel):
    """Replace the weekly schedule and its one-off additions."""
    schedule: List[DaySchedule]
    special_shifts: Optional[List[SpecialShift]] = None
    leaves: Optional[List[PlannedLeave]] = None


class Doctor(DoctorBase):
    """Doctor record as stored in a tenant database."""
    doctor_id: str
    institution_id: str
    metrics: DoctorMetrics = Field(default_factory=DoctorMetrics)
    daily_overrides: List[DailyOverride] = []
    is_active: bool = True
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return f"Dr. {self.personal_info.first_name} {self.personal_info.last_name}"

    def day_schedule(self, target_date: date) -> Optional[DaySchedule]:
        """
        Effective schedule for a calendar date.

        Weekly shifts are filtered by their week-of-month rule and any
        special shifts for the date are merged in, ordered by start time.
        """
        weekly = next(
            (d for d in self.schedule if d.day_of_week == target_date.weekday()),
            None
        )
        week_of_month = (target_date.day - 1) // 7 + 1

        shifts: List[Shift] = []
        breaks = []
        if weekly and weekly.is_available:
            shifts = [s for s in weekly.shifts if s.runs_in_week(week_of_month)]
            breaks = list(weekly.breaks)

        shifts += [s.as_shift() for s in self.special_shifts if s.date == target_date]
        if not shifts:
            return None

        shifts.sort(key=lambda s: s.start_time)
        return DaySchedule(
            day_of_week=target_date.weekday(),
            is_available=True,
            shifts=shifts,
            breaks=breaks
        )

    def override_for(self, target_date: date) -> Optional[DailyOverride]:
        for override in self.daily_overrides:
            if override.date == target_date:
                return override
        return None

    def is_on_leave(self, target_date: date, shift_name: str) -> bool:
        return any(leave.covers(target_date, shift_name) for leave in self.leaves)
