"""
Live shift models: the operational record of a shift actually running.
"""

from pydantic import BaseModel, Field
from typing import Optional
from datetime import date, datetime
from enum import Enum


class LiveShiftStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class LiveShift(BaseModel):
    """Live shift response model."""
    id: str = Field(..., alias="_id")
    institution_id: str
    date: date
    doctor_id: str
    shift_name: str
    status: LiveShiftStatus = LiveShiftStatus.PENDING
    planned_start_time: Optional[str] = None  # "HH:MM"
    planned_end_time: Optional[str] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    max_tokens: int = 0
    total_tokens_booked: int = 0
    tokens_completed: int = 0
    current_active_token_id: Optional[str] = None
    started_by: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancel_reason: str = ""

    class Config:
        populate_by_name = True


class ShiftActionRequest(BaseModel):
    """Start, complete or cancel a doctor's shift."""
    date: date
    doctor_id: str
    shift_name: str
    reason: Optional[str] = None
