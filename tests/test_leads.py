"""Tests for lead records and store-and-forget persistence."""

import pytest

from refap.tools.leads import INSERT_LEAD_SQL, LeadOutcome, LeadRecord, LeadStore
from tests.conftest import FakeDatabase


class TestLeadRecord:
    def test_from_slots(self):
        lead = LeadRecord.from_slots("sess-123456", {
            "contact_name": "Julie Martin",
            "phone": "06 12 34 56 78",
            "vehicle": "Peugeot 308",
            "postcode": "75001",
            "symptoms": "fumée noire",
        })
        assert lead.session_id == "sess-123456"
        assert lead.name == "Julie Martin"
        assert lead.phone == "0612345678"
        assert lead.note == "fumée noire"
        assert lead.source == "chat"

    def test_ids_are_unique(self):
        assert LeadRecord().id != LeadRecord().id

    def test_form_is_default_source(self):
        assert LeadRecord(name="Julie").source == "form"


class TestLeadStore:
    @pytest.mark.asyncio
    async def test_without_database_keeps_in_memory(self):
        store = LeadStore()
        lead = LeadRecord(name="Julie")
        assert await store.save(lead) == lead.id
        assert list(store.pending) == [lead]
        assert store.stored == 0

    @pytest.mark.asyncio
    async def test_insert(self):
        db = FakeDatabase()
        store = LeadStore(db)
        lead = LeadRecord(name="Julie", phone="0612345678")
        assert await store.save(lead) == lead.id
        assert store.stored == 1
        query, args = db.queries[0]
        assert query == INSERT_LEAD_SQL
        assert args[0] == lead.id
        assert args[3] == "0612345678"

    @pytest.mark.asyncio
    async def test_insert_failure_still_returns_id(self):
        store = LeadStore(FakeDatabase(error=OSError("connection reset")))
        lead = LeadRecord(name="Julie")
        assert await store.save(lead) == lead.id
        assert store.failed == 1
        assert list(store.pending) == [lead]

    @pytest.mark.asyncio
    async def test_unavailable_database_skips_insert(self):
        db = FakeDatabase(healthy=False)
        store = LeadStore(db)
        await store.save(LeadRecord(name="Julie"))
        assert db.queries == []
        assert len(store.pending) == 1

    @pytest.mark.asyncio
    async def test_outcomes(self):
        assert await LeadStore().persist(LeadRecord()) == LeadOutcome.BUFFERED
        assert await LeadStore(FakeDatabase()).persist(LeadRecord()) == LeadOutcome.STORED
        failing = LeadStore(FakeDatabase(error=OSError("connection reset")))
        assert await failing.persist(LeadRecord()) == LeadOutcome.FAILED

    @pytest.mark.asyncio
    async def test_buffer_keeps_most_recent(self):
        store = LeadStore(buffer_size=2)
        leads = [LeadRecord(name=name) for name in ("Julie", "Marc", "Sofia")]
        for lead in leads:
            await store.save(lead)
        assert list(store.pending) == leads[1:]
        assert store.buffered == 3
