"""
Queue token lifecycle: issuance at booking time and validated status changes.
"""

import logging
import uuid
from datetime import date, datetime
from typing import Dict, List, Optional, Set

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from ..config import get_settings
from ..database import Database
from ..exceptions import (
    ConcurrencyConflict,
    InvalidTransition,
    NotFound,
    PersistenceError,
    ValidationError
)
from ..models.institution import Counter, CounterStatus, Institution
from ..models.live_shift import LiveShiftStatus
from ..models.queue import (
    PENDING_STATUSES,
    TERMINAL_STATUSES,
    CounterCreate,
    DoctorStatusBoard,
    QueueCallRequest,
    QueueDisplay,
    QueueToken,
    QueueTokenCreate,
    TokenStatus
)
from .doctor_service import DoctorService
from .eta_service import CANCELLED, ArrivalEstimate, estimate_arrival
from .live_shift_service import LiveShiftService, resolve_shift
from .notification_service import (
    TV_DISPLAY_SCOPE,
    EventType,
    NotificationService,
    department_channel,
    doctor_channel
)
from .sequence_service import (
    SequenceService,
    department_prefix,
    department_scope,
    doctor_prefix,
    doctor_shift_scope,
    format_token_code
)

settings = get_settings()
logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[TokenStatus, Set[TokenStatus]] = {
    TokenStatus.WAITING: {TokenStatus.CALLED, TokenStatus.HOLD, TokenStatus.SKIPPED, TokenStatus.CANCELLED},
    TokenStatus.CALLED: {TokenStatus.IN_PROGRESS, TokenStatus.HOLD, TokenStatus.SKIPPED, TokenStatus.CANCELLED},
    TokenStatus.IN_PROGRESS: {TokenStatus.COMPLETED, TokenStatus.CANCELLED},
    TokenStatus.HOLD: {TokenStatus.WAITING, TokenStatus.CANCELLED},
}

CLOSED_SHIFT_STATUSES = {LiveShiftStatus.CANCELLED, LiveShiftStatus.COMPLETED}

ACTIVE_STATUSES = [
    TokenStatus.WAITING.value,
    TokenStatus.CALLED.value,
    TokenStatus.IN_PROGRESS.value,
    TokenStatus.HOLD.value
]


def check_transition(current: TokenStatus, requested: TokenStatus):
    """Raise InvalidTransition unless ``current -> requested`` is legal."""
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(
            current.value, requested.value, f"Token is already {current.value} and cannot change"
        )
    if requested not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, requested.value)


def _object_id(token_id: str) -> ObjectId:
    try:
        return ObjectId(token_id)
    except (InvalidId, TypeError):
        raise NotFound(f"Token '{token_id}' not found")


def _to_model(doc: dict) -> QueueToken:
    doc["_id"] = str(doc["_id"])
    return QueueToken(**doc)


class QueueService:
    """Queue token lifecycle manager."""

    @classmethod
    async def _tokens(cls, institution_id: str):
        return await Database.get_tenant_collection(institution_id, "queue_tokens")

    @classmethod
    async def issue_token(
        cls,
        institution_id: str,
        token_data: QueueTokenCreate,
        issued_by: Optional[str] = None
    ) -> QueueToken:
        """
        Issue a new queue token.

        Doctor bookings are numbered per doctor shift and carry an ETA from
        the doctor's schedule; department tokens are numbered per department.
        The patient and item details are copied onto the token as they are now.
        """
        institution = Institution(**await Database.get_institution(institution_id))
        day = token_data.date
        doctor = None
        shift = None

        if token_data.doctor_id:
            if not token_data.shift_name:
                raise ValidationError("A shift name is required for doctor bookings")
            doctor = await DoctorService.get_doctor(institution_id, token_data.doctor_id)
            shift = resolve_shift(doctor, day, token_data.shift_name)

            if estimate_arrival(doctor, day, shift.shift_name, 1) is CANCELLED:
                raise ValidationError(
                    f"{doctor.display_name}'s '{shift.shift_name}' shift is cancelled on {day.isoformat()}"
                )

            live = await LiveShiftService.get_shift(institution_id, day, doctor.doctor_id, shift.shift_name)
            if live is not None and live.status in CLOSED_SHIFT_STATUSES:
                raise ValidationError(
                    f"{doctor.display_name}'s '{shift.shift_name}' shift is "
                    f"{live.status.value.lower()} on {day.isoformat()}"
                )

            scope = doctor_shift_scope(doctor.doctor_id, shift.shift_name)
            prefix = doctor_prefix(doctor)

            if not doctor.consultation_rules.allow_overbooking:
                issued = await SequenceService.peek_sequence(institution_id, day, scope)
                if issued >= shift.max_tokens:
                    raise ValidationError(
                        f"'{shift.shift_name}' is full ({shift.max_tokens} tokens) on {day.isoformat()}"
                    )
        else:
            scope = department_scope(token_data.department)
            prefix = department_prefix(institution, token_data.department)

        sequence = await SequenceService.next_sequence(institution_id, day, scope)

        estimate = None
        if doctor is not None:
            result = estimate_arrival(doctor, day, shift.shift_name, sequence)
            if isinstance(result, ArrivalEstimate):
                estimate = result

        now = datetime.utcnow()
        token_doc = {
            "institution_id": institution_id,
            "date": day.isoformat(),
            "department": token_data.department,
            "scope": scope,
            "token_number": format_token_code(prefix, sequence, institution.settings.queue.token_format),
            "sequence": sequence,
            "doctor_id": doctor.doctor_id if doctor else None,
            "shift_name": shift.shift_name if shift else None,
            "priority": token_data.priority,
            "patient_id": token_data.patient_id,
            "order_id": token_data.order_id,
            "patient_details": token_data.patient.model_dump(),
            "items": [item.model_dump() for item in token_data.items],
            "status": TokenStatus.WAITING.value,
            "is_rescheduled": False,
            "original_date": None,
            "action_required": False,
            "estimated_start_time": estimate.timestamp if estimate else None,
            "estimated_time_display": estimate.formatted if estimate else None,
            "is_overbooked": estimate.is_overbooked if estimate else False,
            "notes": token_data.notes,
            "issued_by": issued_by,
            "assigned_counter_id": None,
            "assigned_counter_name": None,
            "called_at": None,
            "completed_at": None,
            "created_at": now,
            "updated_at": None
        }

        tokens = await cls._tokens(institution_id)
        try:
            result = await tokens.insert_one(token_doc)
        except PyMongoError as e:
            logger.error("Token write failed for %s #%d: %s", scope, sequence, e)
            raise PersistenceError(f"Could not save token: {e}") from e
        token_doc["_id"] = result.inserted_id

        if doctor is not None:
            await LiveShiftService.ensure_shift(institution_id, day, doctor.doctor_id, shift, inc_booked=1)

        token = _to_model(token_doc)
        logger.info("Issued token %s (%s) for %s", token.token_number, scope, day)

        payload = token.model_dump(mode="json", by_alias=False)
        NotificationService.publish(department_channel(token.department), EventType.TOKEN_ISSUED, payload)
        if token.doctor_id:
            NotificationService.publish(doctor_channel(token.doctor_id), EventType.TOKEN_ISSUED, payload)
        return token

    @classmethod
    async def transition(
        cls,
        institution_id: str,
        token_id: str,
        new_status: TokenStatus,
        notes: Optional[str] = None
    ) -> QueueToken:
        """
        Apply a validated status change.

        The write is conditioned on the status that was read, so two operators
        racing on one token cannot both win. A lost race is retried a bounded
        number of times against the fresh status.
        """
        tokens = await cls._tokens(institution_id)
        oid = _object_id(token_id)

        updated = None
        for attempt in range(settings.TRANSITION_MAX_RETRIES + 1):
            try:
                doc = await tokens.find_one({"_id": oid})
            except PyMongoError as e:
                raise PersistenceError(f"Could not load token: {e}") from e
            if not doc:
                raise NotFound(f"Token '{token_id}' not found")

            current = TokenStatus(doc["status"])
            check_transition(current, new_status)

            now = datetime.utcnow()
            update_data = {"status": new_status.value, "updated_at": now}
            if new_status == TokenStatus.CALLED:
                update_data["called_at"] = now
            if new_status == TokenStatus.COMPLETED:
                update_data["completed_at"] = now
            if notes:
                update_data["notes"] = notes

            try:
                updated = await tokens.find_one_and_update(
                    {"_id": oid, "status": current.value},
                    {"$set": update_data},
                    return_document=ReturnDocument.AFTER
                )
            except PyMongoError as e:
                raise PersistenceError(f"Could not update token: {e}") from e

            if updated:
                break
            logger.warning(
                "Token %s changed while moving %s -> %s (attempt %d)",
                token_id, current.value, new_status.value, attempt + 1
            )
        else:
            raise ConcurrencyConflict(f"Token '{token_id}' kept changing; retry the operation")

        token = _to_model(updated)
        logger.info("Token %s moved to %s", token.token_number, token.status.value)
        await cls._after_transition(token)
        return token

    @classmethod
    async def _after_transition(cls, token: QueueToken):
        if token.doctor_id and token.shift_name:
            if token.status == TokenStatus.COMPLETED:
                await LiveShiftService.record_completion(
                    token.institution_id, token.date, token.doctor_id, token.shift_name
                )
            elif token.status == TokenStatus.CALLED:
                await LiveShiftService.set_active_token(
                    token.institution_id, token.date, token.doctor_id, token.shift_name, token.id
                )

        payload = token.model_dump(mode="json", by_alias=False)
        NotificationService.publish(department_channel(token.department), EventType.QUEUE_UPDATE, payload)
        if token.status == TokenStatus.CALLED:
            NotificationService.publish(TV_DISPLAY_SCOPE, EventType.TV_ANNOUNCEMENT, {
                "token": token.token_number,
                "counter_name": token.assigned_counter_name
            })

    @classmethod
    async def call_next(
        cls,
        institution_id: str,
        request: QueueCallRequest,
        called_by: Optional[str] = None
    ) -> Optional[QueueToken]:
        """
        Atomically claim the front WAITING token of a department or doctor shift.

        A counter named by id must be registered and ONLINE.
        """
        day = request.queue_date or date.today()
        counter_name = request.counter_name
        if request.counter_id:
            counter = await cls._online_counter(institution_id, request.counter_id)
            counter_name = counter_name or counter.name
        query = {
            "institution_id": institution_id,
            "date": day.isoformat(),
            "status": TokenStatus.WAITING.value
        }
        if request.doctor_id:
            if not request.shift_name:
                raise ValidationError("A shift name is required to call a doctor's queue")
            query["doctor_id"] = request.doctor_id
            query["shift_name"] = request.shift_name
        elif request.department:
            query["department"] = request.department
        else:
            raise ValidationError("Give a department or a doctor shift to call from")

        now = datetime.utcnow()
        tokens = await cls._tokens(institution_id)
        try:
            doc = await tokens.find_one_and_update(
                query,
                {"$set": {
                    "status": TokenStatus.CALLED.value,
                    "called_at": now,
                    "updated_at": now,
                    "called_by": called_by,
                    "assigned_counter_id": request.counter_id,
                    "assigned_counter_name": counter_name
                }},
                sort=[("priority", -1), ("sequence", 1)],
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not call next token: {e}") from e

        if not doc:
            return None

        token = _to_model(doc)
        logger.info("Called token %s", token.token_number)
        await cls._after_transition(token)
        return token

    @classmethod
    async def _online_counter(cls, institution_id: str, counter_id: str) -> Counter:
        institution = Institution(**await Database.get_institution(institution_id))
        counter = institution.get_counter(counter_id)
        if counter is None:
            raise NotFound(f"Counter '{counter_id}' not found")
        if counter.status != CounterStatus.ONLINE:
            raise ValidationError(f"Counter '{counter.name}' is {counter.status.value.lower()}")
        return counter

    @classmethod
    async def get_token(cls, institution_id: str, token_id: str) -> QueueToken:
        """Get token by ID."""
        tokens = await cls._tokens(institution_id)
        try:
            doc = await tokens.find_one({"_id": _object_id(token_id)})
        except PyMongoError as e:
            raise PersistenceError(f"Could not load token: {e}") from e
        if not doc:
            raise NotFound(f"Token '{token_id}' not found")
        return _to_model(doc)

    @classmethod
    async def _find(cls, institution_id: str, query: dict, sort=None) -> List[QueueToken]:
        tokens = await cls._tokens(institution_id)
        cursor = tokens.find(query)
        if sort:
            cursor = cursor.sort(sort)

        results = []
        try:
            async for doc in cursor:
                results.append(_to_model(doc))
        except PyMongoError as e:
            raise PersistenceError(f"Could not list tokens: {e}") from e
        return results

    @classmethod
    async def get_live_queue(cls, institution_id: str, day: date, department: str) -> List[QueueToken]:
        """Unfinished tokens of a department, front of the queue first."""
        return await cls._find(
            institution_id,
            {
                "institution_id": institution_id,
                "date": day.isoformat(),
                "department": department,
                "status": {"$in": ACTIVE_STATUSES}
            },
            sort=[("priority", -1), ("sequence", 1)]
        )

    @classmethod
    async def get_queue_display(
        cls,
        institution_id: str,
        day: date,
        department: Optional[str] = None,
        doctor_id: Optional[str] = None,
        shift_name: Optional[str] = None
    ) -> QueueDisplay:
        """Get current queue status for a display board."""
        query = {"institution_id": institution_id, "date": day.isoformat()}
        if department:
            query["department"] = department
        if doctor_id:
            query["doctor_id"] = doctor_id
        if shift_name:
            query["shift_name"] = shift_name

        tokens = await cls._find(institution_id, query, sort=[("priority", -1), ("sequence", 1)])

        waiting = [t for t in tokens if t.status == TokenStatus.WAITING]
        in_progress = [t for t in tokens if t.status in (TokenStatus.CALLED, TokenStatus.IN_PROGRESS)]
        on_hold = [t for t in tokens if t.status == TokenStatus.HOLD]

        wait_times = [
            (t.called_at - t.created_at).total_seconds() / 60
            for t in tokens
            if t.status == TokenStatus.COMPLETED and t.called_at and t.created_at
        ]
        avg_wait = sum(wait_times) / len(wait_times) if wait_times else None

        return QueueDisplay(
            waiting=waiting,
            in_progress=in_progress,
            on_hold=on_hold,
            total_waiting=len(waiting),
            average_wait_minutes=avg_wait,
            next_token=waiting[0].token_number if waiting else None
        )

    @classmethod
    async def list_action_required(cls, institution_id: str, day: Optional[date] = None) -> List[QueueToken]:
        """Cancelled tokens waiting for an operator to re-book them."""
        query = {"institution_id": institution_id, "action_required": True}
        if day:
            query["date"] = day.isoformat()
        return await cls._find(institution_id, query, sort=[("date", 1), ("sequence", 1)])

    @classmethod
    async def resolve_action(cls, institution_id: str, token_id: str) -> QueueToken:
        """Clear the re-booking flag once an operator has dealt with the token."""
        tokens = await cls._tokens(institution_id)
        try:
            doc = await tokens.find_one_and_update(
                {"_id": _object_id(token_id), "action_required": True},
                {"$set": {"action_required": False, "updated_at": datetime.utcnow()}},
                return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not update token: {e}") from e
        if not doc:
            raise NotFound(f"No pending action for token '{token_id}'")
        return _to_model(doc)

    @classmethod
    async def refresh_estimates(
        cls, institution_id: str, doctor_id: str, day: date, shift_name: str
    ) -> List[str]:
        """
        Recompute ETAs of WAITING and HOLD tokens of one doctor shift.

        Issued ETAs are booking-time estimates; this runs only when an
        operator asks for it, e.g. after a delay override.
        """
        doctor = await DoctorService.get_doctor(institution_id, doctor_id)
        tokens = await cls._tokens(institution_id)
        pending = await cls._find(institution_id, {
            "institution_id": institution_id,
            "date": day.isoformat(),
            "doctor_id": doctor_id,
            "shift_name": shift_name,
            "status": {"$in": [s.value for s in PENDING_STATUSES]}
        }, sort=[("sequence", 1)])

        refreshed = []
        for token in pending:
            estimate = estimate_arrival(doctor, day, shift_name, token.sequence)
            if not isinstance(estimate, ArrivalEstimate):
                continue
            try:
                result = await tokens.update_one(
                    {"_id": ObjectId(token.id), "status": {"$in": [s.value for s in PENDING_STATUSES]}},
                    {"$set": {
                        "estimated_start_time": estimate.timestamp,
                        "estimated_time_display": estimate.formatted,
                        "updated_at": datetime.utcnow()
                    }}
                )
            except PyMongoError as e:
                raise PersistenceError(f"Could not refresh estimate: {e}") from e
            if result.modified_count:
                refreshed.append(token.id)

        logger.info("Refreshed %d estimates for %s/%s on %s", len(refreshed), doctor_id, shift_name, day)
        if refreshed:
            NotificationService.publish(doctor_channel(doctor_id), EventType.QUEUE_UPDATE, {
                "refreshed_token_ids": refreshed
            })
        return refreshed

    @classmethod
    async def list_counters(cls, institution_id: str) -> List[Counter]:
        """Service desks of the institution with their current status."""
        institution = Institution(**await Database.get_institution(institution_id))
        return institution.counters

    @classmethod
    async def add_counter(cls, institution_id: str, counter_data: CounterCreate) -> Counter:
        """Register a desk. New desks start OFFLINE."""
        counter = Counter(counter_id=str(uuid.uuid4()), **counter_data.model_dump())
        institutions = Database.get_collection("institutions")
        try:
            result = await institutions.update_one(
                {"institution_id": institution_id},
                {"$push": {"counters": counter.model_dump(mode="json")}}
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not register counter: {e}") from e

        if result.matched_count == 0:
            raise NotFound(f"Institution '{institution_id}' not found")

        logger.info("Registered counter %s (%s) for %s", counter.name, counter.counter_id, institution_id)
        return counter

    @classmethod
    async def set_counter_status(
        cls,
        institution_id: str,
        counter_id: str,
        status: CounterStatus,
        staff_id: Optional[str] = None
    ) -> Counter:
        """Open, pause or close a desk and record who is sitting at it."""
        institutions = Database.get_collection("institutions")
        try:
            result = await institutions.update_one(
                {"institution_id": institution_id, "counters.counter_id": counter_id},
                {"$set": {
                    "counters.$.status": status.value,
                    "counters.$.current_staff_id": staff_id
                }}
            )
        except PyMongoError as e:
            raise PersistenceError(f"Could not update counter: {e}") from e

        if result.matched_count == 0:
            raise NotFound(f"Counter '{counter_id}' not found")

        institution = Institution(**await Database.get_institution(institution_id))
        counter = institution.get_counter(counter_id)
        logger.info("Counter %s is now %s", counter.name, status.value)
        return counter

    @classmethod
    async def get_doctor_status(cls, institution_id: str, doctor_id: str, day: date) -> DoctorStatusBoard:
        """
        Waiting-room status of a doctor: the running shift and token and the
        declared delay. The doctor counts as delayed once the delay passes
        DELAYED_AFTER_MINUTES.
        """
        doctor = await DoctorService.get_doctor(institution_id, doctor_id)
        live_shifts = await LiveShiftService.list_shifts(institution_id, day, doctor_id)
        running = next((s for s in live_shifts if s.status == LiveShiftStatus.IN_PROGRESS), None)

        board = DoctorStatusBoard(doctor_id=doctor_id, date=day)
        if running:
            board.shift_name = running.shift_name
            if running.current_active_token_id:
                token = await cls.get_token(institution_id, running.current_active_token_id)
                board.token_running = token.token_number

        override = doctor.override_for(day)
        if override and not override.is_cancelled:
            applies = override.is_whole_day if running is None else override.applies_to(running.shift_name)
            if applies:
                board.current_delay_minutes = override.delay_minutes

        if board.current_delay_minutes > settings.DELAYED_AFTER_MINUTES:
            board.status = "Delayed"
        return board
