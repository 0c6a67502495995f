"""
Tests for daily sequence issuance and token codes.
"""

import asyncio
from datetime import date

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from medqueue.database import Database
from medqueue.exceptions import NotFound, PersistenceError, ValidationError
from medqueue.models.doctor import Doctor
from medqueue.models.institution import Institution
from medqueue.services.sequence_service import (
    SequenceService,
    department_order_scope,
    department_prefix,
    department_scope,
    doctor_prefix,
    doctor_shift_scope,
    format_token_code,
    master_invoice_scope
)

from conftest import INSTITUTION_ID, MONDAY, OTHER_INSTITUTION_ID, TUESDAY


class TestNextSequence:
    """Counter increments per (institution, date, scope)."""

    async def test_first_call_returns_one(self, db):
        assert await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Pathology") == 1

    async def test_seventh_pathology_token_of_the_day(self, db):
        for _ in range(6):
            await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Pathology")

        seq = await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Pathology")

        assert seq == 7
        assert format_token_code("PAT", seq) == "PAT-007"

    async def test_three_concurrent_then_one_later(self, db):
        day = date(2025, 6, 1)

        results = await asyncio.gather(*[
            SequenceService.next_sequence(INSTITUTION_ID, day, "PAT") for _ in range(3)
        ])

        assert set(results) == {1, 2, 3}
        assert await SequenceService.next_sequence(INSTITUTION_ID, day, "PAT") == 4

    async def test_concurrent_calls_are_gapless_and_unique(self, db):
        results = await asyncio.gather(*[
            SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Radiology")
            for _ in range(25)
        ])

        assert sorted(results) == list(range(1, 26))
        assert await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Radiology") == 26

    async def test_scopes_dates_and_institutions_are_independent(self, db):
        await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Pathology")
        await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Pathology")

        assert await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Radiology") == 1
        assert await SequenceService.next_sequence(INSTITUTION_ID, TUESDAY, "Pathology") == 1
        assert await SequenceService.next_sequence(OTHER_INSTITUTION_ID, MONDAY, "Pathology") == 1

    async def test_tenants_use_separate_databases(self, db):
        await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Pathology")

        counters = db["tenant_city_clinic"]["daily_counters"]
        other_counters = db["tenant_lake_hospital"]["daily_counters"]
        assert await counters.count_documents({}) == 1
        assert await other_counters.count_documents({}) == 0

    async def test_peek_does_not_increment(self, db):
        assert await SequenceService.peek_sequence(INSTITUTION_ID, MONDAY, "Pathology") == 0
        await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Pathology")

        assert await SequenceService.peek_sequence(INSTITUTION_ID, MONDAY, "Pathology") == 1
        assert await SequenceService.peek_sequence(INSTITUTION_ID, MONDAY, "Pathology") == 1

    async def test_unknown_institution(self, db):
        with pytest.raises(NotFound):
            await SequenceService.next_sequence("nowhere", MONDAY, "Pathology")

    async def test_store_failure_raises_persistence_error(self, db, monkeypatch):
        class DownCollection:
            async def find_one_and_update(self, *args, **kwargs):
                raise ServerSelectionTimeoutError("no servers available")

        async def down(institution_id, name):
            return DownCollection()

        monkeypatch.setattr(Database, "get_tenant_collection", down)

        with pytest.raises(PersistenceError):
            await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Pathology")

    async def test_upsert_collision_is_retried(self, db, monkeypatch):
        calls = []

        class CollidingCollection:
            async def find_one_and_update(self, *args, **kwargs):
                calls.append(args)
                if len(calls) == 1:
                    raise DuplicateKeyError("E11000 duplicate key")
                return {"sequence_value": 2}

        async def colliding(institution_id, name):
            return CollidingCollection()

        monkeypatch.setattr(Database, "get_tenant_collection", colliding)

        assert await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Pathology") == 2
        assert len(calls) == 2


class TestNumbering:

    async def test_invoice_numbers_use_institution_prefix(self, db):
        first = await SequenceService.next_invoice_number(INSTITUTION_ID, MONDAY)
        second = await SequenceService.next_invoice_number(INSTITUTION_ID, MONDAY)

        assert first == "CCI-20250602-0001"
        assert second == "CCI-20250602-0002"

    async def test_invoice_prefix_defaults(self, db):
        assert await SequenceService.next_invoice_number(OTHER_INSTITUTION_ID, MONDAY) == "INV-20250602-0001"

    async def test_department_order_ids(self, db):
        order_id = await SequenceService.next_department_order_id(INSTITUTION_ID, MONDAY, "Pathology")
        assert order_id == "PAT-250602-001"

        # Order numbering does not consume token numbers
        assert await SequenceService.next_sequence(INSTITUTION_ID, MONDAY, "Pathology") == 1


class TestScopesAndCodes:

    def test_scope_builders(self):
        assert department_scope("Pathology") == "Pathology"
        assert master_invoice_scope() == "MASTER_INVOICE"
        assert department_order_scope("Pathology") == "ORDER_Pathology"
        assert doctor_shift_scope("doc-1", "Morning") == "DOC_doc-1_Morning"
        assert doctor_shift_scope("doc-1", "Morning") != doctor_shift_scope("doc-2", "Morning")

    def test_scope_builders_reject_missing_parts(self):
        with pytest.raises(ValidationError):
            department_scope("")
        with pytest.raises(ValidationError):
            doctor_shift_scope("doc-1", "")

    def test_token_code_formats(self):
        assert format_token_code("PAT", 1) == "PAT-001"
        assert format_token_code("PAT", 1234) == "PAT-1234"
        assert format_token_code("OPD", 12, "{OUTLET}/{NUMBER}") == "OPD/012"

    def test_department_prefix(self):
        institution = Institution(
            institution_id=INSTITUTION_ID,
            settings={"queue": {"department_prefixes": {"Pathology": "LAB"}}}
        )
        assert department_prefix(institution, "Pathology") == "LAB"
        assert department_prefix(institution, "Radiology") == "RAD"
        assert department_prefix(None, "X-Ray") == "XRA"
        assert department_prefix(None, "--") == "TKN"

    def test_doctor_prefix_from_initials(self, build_doctor):
        doctor: Doctor = build_doctor()
        assert doctor_prefix(doctor) == "AR"
