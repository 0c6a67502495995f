"""
Institution settings the scheduling engine reads from the master registry.
"""

from pydantic import BaseModel
from typing import Dict, List, Optional
from enum import Enum


class CascadePolicy(str, Enum):
    """What happens to issued tokens when a shift or day is cancelled."""
    AUTO_NEXT_AVAILABLE = "AUTO_NEXT_AVAILABLE"
    CANCEL_ALL = "CANCEL_ALL"
    MANUAL_ALLOCATION = "MANUAL_ALLOCATION"


class CounterStatus(str, Enum):
    ONLINE = "ONLINE"
    PAUSED = "PAUSED"  # staff away for a moment
    OFFLINE = "OFFLINE"


class Counter(BaseModel):
    """A service desk that calls tokens to itself."""
    counter_id: str
    name: str
    department: Optional[str] = None
    status: CounterStatus = CounterStatus.OFFLINE
    current_staff_id: Optional[str] = None


class QueueSettings(BaseModel):
    token_format: Optional[str] = None  # e.g. "{PREFIX}-{NUMBER}"
    department_prefixes: Dict[str, str] = {}
    full_day_cancellation_policy: Optional[CascadePolicy] = None
    shift_cancellation_policy: Optional[CascadePolicy] = None


class InstitutionSettings(BaseModel):
    timezone: str = "Asia/Kolkata"
    queue: QueueSettings = QueueSettings()


class BillingSettings(BaseModel):
    invoice_prefix: Optional[str] = None


class Institution(BaseModel):
    """Tenant registry entry."""
    institution_id: str
    name: Optional[str] = None
    db_name: Optional[str] = None
    settings: InstitutionSettings = InstitutionSettings()
    billing: BillingSettings = BillingSettings()
    counters: List[Counter] = []

    def get_counter(self, counter_id: str) -> Optional[Counter]:
        return next((c for c in self.counters if c.counter_id == counter_id), None)
