"""
Shared fixtures: an in-memory Motor client, a seeded institution and a
doctor with a Monday/Tuesday schedule.

2025-06-02 is a Monday, 2025-06-01 a Sunday.
"""

from datetime import date

import pytest
from mongomock_motor import AsyncMongoMockClient

from medqueue.database import Database
from medqueue.models.doctor import Doctor, DoctorCreate
from medqueue.services.doctor_service import DoctorService
from medqueue.services.notification_service import NotificationService

INSTITUTION_ID = "inst-001"
OTHER_INSTITUTION_ID = "inst-002"
MONDAY = date(2025, 6, 2)
TUESDAY = date(2025, 6, 3)
SUNDAY = date(2025, 6, 1)


def weekly_schedule(morning_max=20, evening_max=10):
    return [
        {
            "day_of_week": 0,
            "is_available": True,
            "shifts": [
                {"shift_name": "Morning", "start_time": "09:00", "end_time": "13:00", "max_tokens": morning_max},
                {"shift_name": "Evening", "start_time": "17:00", "end_time": "20:00", "max_tokens": evening_max},
            ],
            "breaks": [{"label": "Tea", "start_time": "11:00", "end_time": "11:30"}],
        },
        {
            "day_of_week": 1,
            "is_available": True,
            "shifts": [
                {"shift_name": "Morning", "start_time": "09:00", "end_time": "13:00", "max_tokens": morning_max},
            ],
        },
        {"day_of_week": 6, "is_available": False, "shifts": []},
    ]


def doctor_payload(**overrides) -> dict:
    payload = {
        "personal_info": {"first_name": "Anita", "last_name": "Rao"},
        "specialization": "General Medicine",
        "department": "Consultation",
        "consultation_rules": {
            "avg_time_per_patient_minutes": 15,
            "slot_duration_minutes": 15,
            "allow_overbooking": True,
        },
        "leave_settings": {"leave_limit_per_year": 12},
        "schedule": weekly_schedule(),
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def build_doctor():
    """Build an in-memory Doctor without touching the database."""
    def _build(**overrides) -> Doctor:
        data = doctor_payload(**overrides)
        data.setdefault("doctor_id", "doc-1")
        data.setdefault("institution_id", INSTITUTION_ID)
        return Doctor(**data)
    return _build


@pytest.fixture
async def db():
    """Connect the engine to a fresh in-memory MongoDB with two institutions."""
    client = AsyncMongoMockClient()
    await Database.connect(client=client)
    NotificationService.reset()

    await Database.get_collection("institutions").insert_many([
        {
            "institution_id": INSTITUTION_ID,
            "name": "City Clinic",
            "db_name": "tenant_city_clinic",
            "settings": {"queue": {"department_prefixes": {"Pathology": "PAT"}}},
            "billing": {"invoice_prefix": "CCI"},
        },
        {
            "institution_id": OTHER_INSTITUTION_ID,
            "name": "Lake Hospital",
            "db_name": "tenant_lake_hospital",
        },
    ])

    yield client

    Database.client = None
    Database.db = None
    Database._tenant_dbs = {}
    NotificationService.reset()


@pytest.fixture
async def doctor(db):
    """A stored doctor: Monday Morning/Evening, Tuesday Morning, Sunday off."""
    return await DoctorService.create_doctor(INSTITUTION_ID, DoctorCreate(**doctor_payload()))


async def set_institution_policies(full_day=None, shift=None):
    update = {}
    if full_day:
        update["settings.queue.full_day_cancellation_policy"] = full_day
    if shift:
        update["settings.queue.shift_cancellation_policy"] = shift
    await Database.get_collection("institutions").update_one(
        {"institution_id": INSTITUTION_ID}, {"$set": update}
    )
