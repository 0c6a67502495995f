"""
Slot calculation: turns a day's shifts and breaks into bookable start times.
"""

from datetime import time
from typing import Iterator, List, Optional

from ..exceptions import ValidationError
from ..models.schedule import Break, DaySchedule

MINUTES_PER_DAY = 24 * 60


def time_to_minutes(value: time) -> int:
    """Minutes since midnight."""
    return value.hour * 60 + value.minute


def minutes_to_time(minutes: int) -> time:
    """Inverse of time_to_minutes, clamped to the last minute of the day."""
    minutes = min(max(minutes, 0), MINUTES_PER_DAY - 1)
    return time(hour=minutes // 60, minute=minutes % 60)


def _overlapping_break(start: int, duration: int, breaks: List[Break]) -> Optional[Break]:
    # Half-open overlap of [start, start + duration) with [break_start, break_end)
    for brk in breaks:
        if start < time_to_minutes(brk.end_time) and start + duration > time_to_minutes(brk.start_time):
            return brk
    return None


def compute_slots(schedule_for_day: Optional[DaySchedule], slot_duration_minutes: int) -> Iterator[time]:
    """
    Yield the bookable slot start times of a day, in order.

    Each shift is walked in ``slot_duration_minutes`` steps; a slot must end
    by the shift end. When a candidate slot touches a break (the day's breaks
    or the shift's own), the walk jumps straight to that break's end.
    An unavailable day or one without shifts yields nothing.
    """
    if slot_duration_minutes <= 0:
        raise ValidationError("Slot duration must be a positive number of minutes")
    return _walk_slots(schedule_for_day, slot_duration_minutes)


def _walk_slots(schedule_for_day: Optional[DaySchedule], slot_duration_minutes: int) -> Iterator[time]:
    if not schedule_for_day or not schedule_for_day.is_available or not schedule_for_day.shifts:
        return

    last_emitted = -1
    for shift in sorted(schedule_for_day.shifts, key=lambda s: s.start_time):
        breaks = list(schedule_for_day.breaks) + list(shift.breaks)
        current = time_to_minutes(shift.start_time)
        end = time_to_minutes(shift.end_time)

        while current + slot_duration_minutes <= end:
            brk = _overlapping_break(current, slot_duration_minutes, breaks)
            if brk is not None:
                current = time_to_minutes(brk.end_time)
                continue

            if current > last_emitted:
                last_emitted = current
                yield minutes_to_time(current)
            current += slot_duration_minutes
