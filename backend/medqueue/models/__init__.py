"""Pydantic models for MedQueue."""

from .user import User, UserRole, TokenData
from .schedule import (
    Break,
    Shift,
    DaySchedule,
    SpecialShift,
    PlannedLeave,
    WholeDayScope,
    ShiftScope,
    DailyOverride,
    OverrideRequest
)
from .doctor import (
    Doctor,
    DoctorCreate,
    ScheduleUpdate,
    PersonalInfo,
    ConsultationRules,
    LeaveSettings,
    DoctorMetrics
)
from .queue import (
    QueueToken,
    QueueTokenCreate,
    TokenStatus,
    QueueDisplay,
    PatientSnapshot,
    ItemSnapshot
)
from .live_shift import LiveShift, LiveShiftStatus, ShiftActionRequest
from .institution import Institution, CascadePolicy

__all__ = [
    # User
    "User", "UserRole", "TokenData",
    # Schedule
    "Break", "Shift", "DaySchedule", "SpecialShift", "PlannedLeave",
    "WholeDayScope", "ShiftScope", "DailyOverride", "OverrideRequest",
    # Doctor
    "Doctor", "DoctorCreate", "ScheduleUpdate", "PersonalInfo",
    "ConsultationRules", "LeaveSettings", "DoctorMetrics",
    # Queue
    "QueueToken", "QueueTokenCreate", "TokenStatus", "QueueDisplay",
    "PatientSnapshot", "ItemSnapshot",
    # Live shift
    "LiveShift", "LiveShiftStatus", "ShiftActionRequest",
    # Institution
    "Institution", "CascadePolicy"
]
