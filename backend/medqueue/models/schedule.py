"""
Weekly availability, one-off shifts, planned leaves and daily overrides.
"""

from datetime import date, time
from typing import Annotated, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, model_validator


class Break(BaseModel):
    """A pause inside the working day (tea, ward round...)."""
    label: str = "Break"
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def check_range(self):
        if self.end_time <= self.start_time:
            raise ValueError("Break end_time must be after start_time")
        return self


class Shift(BaseModel):
    """A bookable block of the day, e.g. Morning OPD."""
    shift_name: str = Field(..., min_length=1, max_length=50)
    start_time: time
    end_time: time
    max_tokens: int = Field(..., ge=1, description="Token capacity before overbooking")
    repeat_weeks: List[int] = Field(
        default_factory=lambda: [1, 2, 3, 4, 5],
        description="Weeks of the month (1-5) this shift runs"
    )
    breaks: List[Break] = []

    @model_validator(mode="after")
    def check_range(self):
        if self.end_time <= self.start_time:
            raise ValueError(f"Shift '{self.shift_name}' must end after it starts")
        return self

    def runs_in_week(self, week_of_month: int) -> bool:
        return week_of_month in self.repeat_weeks


class DaySchedule(BaseModel):
    """Availability for one weekday (0=Monday ... 6=Sunday)."""
    day_of_week: int = Field(..., ge=0, le=6)
    is_available: bool = True
    shifts: List[Shift] = []
    breaks: List[Break] = Field(default=[], description="Breaks applying across the day")

    def get_shift(self, shift_name: str) -> Optional[Shift]:
        for shift in self.shifts:
            if shift.shift_name == shift_name:
                return shift
        return None

    @property
    def shift_names(self) -> Set[str]:
        return {s.shift_name for s in self.shifts}


class SpecialShift(BaseModel):
    """A one-off shift added to a specific date."""
    date: date
    shift_name: str = Field(..., min_length=1, max_length=50)
    start_time: time
    end_time: time
    max_tokens: int = Field(..., ge=1)
    notes: Optional[str] = None

    def as_shift(self) -> Shift:
        return Shift(
            shift_name=self.shift_name,
            start_time=self.start_time,
            end_time=self.end_time,
            max_tokens=self.max_tokens
        )


class PlannedLeave(BaseModel):
    """Vacation or conference leave. Empty shift_names means full days."""
    start_date: date
    end_date: date
    shift_names: List[str] = []
    reason: Optional[str] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("Leave end_date must not precede start_date")
        return self

    def covers(self, target_date: date, shift_name: str) -> bool:
        if not (self.start_date <= target_date <= self.end_date):
            return False
        return not self.shift_names or shift_name in self.shift_names


class WholeDayScope(BaseModel):
    """Override that applies to every shift of the date."""
    kind: Literal["whole_day"] = "whole_day"

    def applies_to(self, shift_name: str) -> bool:
        return True


class ShiftScope(BaseModel):
    """Override restricted to the named shifts."""
    kind: Literal["shifts"] = "shifts"
    shift_names: Set[str] = Field(..., min_length=1)

    def applies_to(self, shift_name: str) -> bool:
        return shift_name in self.shift_names


OverrideScope = Annotated[Union[WholeDayScope, ShiftScope], Field(discriminator="kind")]


class DailyOverride(BaseModel):
    """A doctor-declared delay or cancellation for one calendar date."""
    date: date
    scope: OverrideScope = Field(default_factory=WholeDayScope)
    delay_minutes: int = Field(default=0, ge=0, le=24 * 60)
    is_cancelled: bool = False
    note: Optional[str] = None

    @model_validator(mode="after")
    def check_effect(self):
        if not self.is_cancelled and self.delay_minutes == 0:
            raise ValueError("An override must either delay or cancel")
        return self

    def applies_to(self, shift_name: str) -> bool:
        return self.scope.applies_to(shift_name)

    @property
    def is_whole_day(self) -> bool:
        return isinstance(self.scope, WholeDayScope)


class OverrideRequest(BaseModel):
    """Override as submitted by the admin desk. Empty shift_names = whole day."""
    date: date
    shift_names: List[str] = []
    delay_minutes: int = Field(default=0, ge=0, le=24 * 60)
    is_cancelled: bool = False
    note: Optional[str] = None

    def to_override(self) -> DailyOverride:
        if self.shift_names:
            scope = ShiftScope(shift_names=set(self.shift_names))
        else:
            scope = WholeDayScope()
        return DailyOverride(
            date=self.date,
            scope=scope,
            delay_minutes=self.delay_minutes,
            is_cancelled=self.is_cancelled,
            note=self.note
        )
