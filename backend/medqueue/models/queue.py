"""
Queue token models for patient flow.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime
from enum import Enum

from .institution import CounterStatus


class TokenStatus(str, Enum):
    """Token lifecycle states."""
    WAITING = "WAITING"
    CALLED = "CALLED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    HOLD = "HOLD"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = {TokenStatus.COMPLETED, TokenStatus.SKIPPED, TokenStatus.CANCELLED}
PENDING_STATUSES = {TokenStatus.WAITING, TokenStatus.HOLD}


class PatientSnapshot(BaseModel):
    """Point-in-time copy of the patient for display boards."""
    name: str = Field(..., min_length=1, max_length=100)
    age: Optional[int] = Field(None, ge=0, le=150)
    gender: Optional[str] = None


class ItemSnapshot(BaseModel):
    """A requested test or consultation, frozen at booking."""
    item_id: str
    name: str


class QueueTokenCreate(BaseModel):
    """Booking request for a new queue token."""
    date: date
    department: str = Field(..., min_length=1, max_length=50)
    doctor_id: Optional[str] = None
    shift_name: Optional[str] = None
    patient_id: Optional[str] = None  # None for walk-ins
    order_id: Optional[str] = None
    patient: PatientSnapshot
    items: List[ItemSnapshot] = []
    priority: int = Field(default=0, ge=0, le=1, description="0=normal, 1=front of queue")
    notes: Optional[str] = None


class QueueToken(BaseModel):
    """Queue token response model."""
    id: str = Field(..., alias="_id")
    institution_id: str
    date: date
    department: str
    scope: str
    token_number: str = Field(..., description="Display code like PAT-001")
    sequence: int
    doctor_id: Optional[str] = None
    shift_name: Optional[str] = None
    priority: int = 0
    patient_id: Optional[str] = None
    order_id: Optional[str] = None
    patient_details: PatientSnapshot
    items: List[ItemSnapshot] = []
    status: TokenStatus = TokenStatus.WAITING
    is_rescheduled: bool = False
    original_date: Optional[date] = None
    action_required: bool = False
    estimated_start_time: Optional[datetime] = None
    estimated_time_display: Optional[str] = None
    is_overbooked: bool = False
    notes: Optional[str] = None
    assigned_counter_id: Optional[str] = None
    assigned_counter_name: Optional[str] = None
    called_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        populate_by_name = True


class QueueDisplay(BaseModel):
    """Queue snapshot for a display board."""
    waiting: List[QueueToken] = []
    in_progress: List[QueueToken] = []
    on_hold: List[QueueToken] = []
    total_waiting: int = 0
    average_wait_minutes: Optional[float] = None
    next_token: Optional[str] = None


class QueueCallRequest(BaseModel):
    """Claim the next waiting token for a counter."""
    queue_date: Optional[date] = None  # defaults to today
    department: Optional[str] = None
    doctor_id: Optional[str] = None
    shift_name: Optional[str] = None
    counter_id: Optional[str] = None
    counter_name: Optional[str] = None


class QueueUpdateRequest(BaseModel):
    """Move a token to a new status."""
    status: TokenStatus
    notes: Optional[str] = None


class EstimateRefreshRequest(BaseModel):
    """Recompute ETAs of not-yet-served tokens of one doctor shift."""
    doctor_id: str
    date: date
    shift_name: str


class CounterCreate(BaseModel):
    """Register a service desk."""
    name: str = Field(..., min_length=1, max_length=50)
    department: Optional[str] = None


class CounterStatusUpdate(BaseModel):
    status: CounterStatus


class DoctorStatusBoard(BaseModel):
    """Waiting-room view of one doctor's day."""
    doctor_id: str
    date: date
    shift_name: Optional[str] = None
    token_running: Optional[str] = None
    current_delay_minutes: int = 0
    status: str = "On Time"  # or "Delayed"
