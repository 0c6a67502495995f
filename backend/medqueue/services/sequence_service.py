"""
Daily sequence issuance backed by atomic counter documents.
"""

import logging
from datetime import date
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from ..config import get_settings
from ..database import Database
from ..exceptions import PersistenceError, ValidationError
from ..models.doctor import Doctor
from ..models.institution import Institution

settings = get_settings()
logger = logging.getLogger(__name__)

MASTER_INVOICE_SCOPE = "MASTER_INVOICE"


def department_scope(department: str) -> str:
    if not department:
        raise ValidationError("Department is required for a department scope")
    return department


def master_invoice_scope() -> str:
    return MASTER_INVOICE_SCOPE


def department_order_scope(department: str) -> str:
    return f"ORDER_{department_scope(department)}"


def doctor_shift_scope(doctor_id: str, shift_name: str) -> str:
    """Each doctor shift numbers its own queue."""
    if not doctor_id or not shift_name:
        raise ValidationError("Doctor scopes need both a doctor and a shift name")
    return f"DOC_{doctor_id}_{shift_name}"


def doctor_prefix(doctor: Doctor) -> str:
    """Token prefix from the doctor's initials, e.g. Anita Rao -> AR."""
    info = doctor.personal_info
    return f"{info.first_name[:1]}{info.last_name[:1]}".upper()


def department_prefix(institution: Optional[Institution], department: str) -> str:
    """Configured prefix for a department, else its first three letters."""
    if institution is not None:
        configured = institution.settings.queue.department_prefixes.get(department)
        if configured:
            return configured
    letters = "".join(ch for ch in department if ch.isalnum())
    return (letters[:3] or "TKN").upper()


def format_token_code(prefix: str, sequence: int, token_format: Optional[str] = None) -> str:
    """Render a display code such as PAT-001."""
    number = str(sequence).zfill(settings.TOKEN_SEQUENCE_PADDING)
    template = token_format or settings.DEFAULT_TOKEN_FORMAT
    return template.replace("{PREFIX}", prefix).replace("{OUTLET}", prefix).replace("{NUMBER}", number)


class SequenceService:
    """Gapless per-scope daily counters."""

    @classmethod
    async def next_sequence(cls, institution_id: str, day: date, scope: str) -> int:
        """
        Atomically increment and return the counter for (institution, day, scope).

        The first call for a new key creates the counter and returns 1. Two
        first calls racing on the upsert can hit the unique index; the loser
        changed nothing, so it is safe to run the increment again.
        """
        counters = await Database.get_tenant_collection(institution_id, "daily_counters")
        key = {"institution_id": institution_id, "date": day.isoformat(), "scope": scope}

        attempts = settings.SEQUENCE_UPSERT_RETRIES + 1
        for attempt in range(attempts):
            try:
                counter = await counters.find_one_and_update(
                    key,
                    {"$inc": {"sequence_value": 1}},
                    upsert=True,
                    return_document=ReturnDocument.AFTER
                )
                return counter["sequence_value"]
            except DuplicateKeyError:
                logger.warning("Counter upsert collided for %s (attempt %d)", key, attempt + 1)
            except PyMongoError as e:
                logger.error("Counter increment failed for %s: %s", key, e)
                raise PersistenceError(f"Could not issue sequence for scope '{scope}': {e}") from e

        raise PersistenceError(f"Could not create counter for scope '{scope}'")

    @classmethod
    async def peek_sequence(cls, institution_id: str, day: date, scope: str) -> int:
        """Last issued value for a scope, 0 if none yet. Does not increment."""
        counters = await Database.get_tenant_collection(institution_id, "daily_counters")
        try:
            counter = await counters.find_one(
                {"institution_id": institution_id, "date": day.isoformat(), "scope": scope}
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not read counter for scope '{scope}': {e}") from e
        return counter["sequence_value"] if counter else 0

    @classmethod
    async def next_invoice_number(cls, institution_id: str, day: date) -> str:
        """Institution-wide invoice number, e.g. INV-20250601-0007."""
        institution = Institution(**await Database.get_institution(institution_id))
        prefix = institution.billing.invoice_prefix or settings.DEFAULT_INVOICE_PREFIX
        seq = await cls.next_sequence(institution_id, day, master_invoice_scope())
        return f"{prefix}-{day.strftime('%Y%m%d')}-{seq:0{settings.INVOICE_SEQUENCE_PADDING}d}"

    @classmethod
    async def next_department_order_id(cls, institution_id: str, day: date, department: str) -> str:
        """Per-department order id, e.g. PAT-250601-003."""
        institution = Institution(**await Database.get_institution(institution_id))
        prefix = department_prefix(institution, department)
        seq = await cls.next_sequence(institution_id, day, department_order_scope(department))
        return f"{prefix}-{day.strftime('%y%m%d')}-{seq:0{settings.TOKEN_SEQUENCE_PADDING}d}"
