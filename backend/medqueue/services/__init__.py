"""Services package for MedQueue."""

from .auth_service import AuthService
from .doctor_service import DoctorService
from .sequence_service import SequenceService
from .queue_service import QueueService
from .live_shift_service import LiveShiftService
from .disruption_service import DisruptionService
from .notification_service import NotificationService
from .slot_service import compute_slots
from .eta_service import estimate_arrival, CANCELLED

__all__ = [
    "AuthService",
    "DoctorService",
    "SequenceService",
    "QueueService",
    "LiveShiftService",
    "DisruptionService",
    "NotificationService",
    "compute_slots",
    "estimate_arrival",
    "CANCELLED"
]
