"""
Arrival time estimation for a position in a doctor's shift queue.
"""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel

from ..config import get_settings
from ..exceptions import ValidationError
from ..models.doctor import Doctor

settings = get_settings()


class EstimateSentinel(Enum):
    """Marker returned when the shift runs no queue that day."""
    CANCELLED = "CANCELLED"


CANCELLED = EstimateSentinel.CANCELLED


class ArrivalEstimate(BaseModel):
    formatted: str
    timestamp: datetime
    is_overbooked: bool = False


EstimateResult = Union[ArrivalEstimate, EstimateSentinel, None]


def format_eta(timestamp: datetime) -> str:
    return timestamp.strftime(settings.ETA_DISPLAY_FORMAT)


def estimate_arrival(
    doctor: Doctor,
    target_date: date,
    shift_name: str,
    sequence_position: int
) -> EstimateResult:
    """
    Project when the patient at ``sequence_position`` (1-based) will be seen.

    Returns ``None`` when the shift does not run that day and ``CANCELLED``
    when an override or planned leave takes the shift out. Otherwise the
    estimate is the shift start, plus any override delay, plus one average
    consultation per patient ahead.
    """
    if sequence_position < 1:
        raise ValidationError("Sequence position starts at 1")

    day = doctor.day_schedule(target_date)
    if day is None:
        return None
    shift = day.get_shift(shift_name)
    if shift is None:
        return None

    if doctor.is_on_leave(target_date, shift_name):
        return CANCELLED

    delay = 0
    override = doctor.override_for(target_date)
    if override is not None and override.applies_to(shift_name):
        if override.is_cancelled:
            return CANCELLED
        delay = override.delay_minutes

    avg = doctor.consultation_rules.avg_time_per_patient_minutes
    timestamp = (
        datetime.combine(target_date, shift.start_time)
        + timedelta(minutes=delay + (sequence_position - 1) * avg)
    )

    return ArrivalEstimate(
        formatted=format_eta(timestamp),
        timestamp=timestamp,
        is_overbooked=sequence_position > shift.max_tokens
    )
