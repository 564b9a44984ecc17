"""Tests for the case-base retriever and the database wrapper."""

import pytest

from refap.tools.database import Database
from refap.tools.retrieval import (
    NullRetriever,
    Passage,
    PostgresCaseRetriever,
    case_preview,
    search_terms,
)
from tests.conftest import FakeDatabase

CASE_ROW = {
    "id": 7,
    "categorie": "FAP",
    "titre": "FAP colmaté",
    "symptomes": ["perte de puissance", "voyant FAP"],
    "codes_obd": ["P2002"],
    "solutions": ["nettoyage du filtre"],
}


class TestSearchTerms:
    def test_short_words_dropped(self):
        assert search_terms("Voyant FAP et perte de puissance") == ["voyant", "perte", "puissance"]

    def test_deduplicated_and_capped(self):
        words = " ".join(f"terme{i}" for i in range(12))
        assert search_terms(words + " terme0") == [f"terme{i}" for i in range(8)]


class TestCasePreview:
    def test_preview(self):
        assert case_preview(CASE_ROW) == (
            "FAP colmaté ; symptômes : perte de puissance, voyant FAP ; codes : P2002 ; "
            "pistes : nettoyage du filtre"
        )

    def test_preview_is_bounded(self):
        row = {"titre": "x" * 500}
        assert len(case_preview(row)) <= 240

    def test_missing_columns(self):
        assert case_preview({"titre": "Vanne EGR"}) == "Vanne EGR"


class TestPostgresCaseRetriever:
    @pytest.mark.asyncio
    async def test_search_builds_keyword_query(self):
        db = FakeDatabase(rows=[CASE_ROW])
        retriever = PostgresCaseRetriever(db, top_k=3)
        passages = await retriever.search("Voyant FAP et perte de puissance")
        assert passages == [Passage(id="7", preview=case_preview(CASE_ROW))]
        query, args = db.queries[0]
        assert "bot.case_technique" in query
        assert "ilike $4" in query
        assert args == (3, "%voyant%", "%perte%", "%puissance%")

    @pytest.mark.asyncio
    async def test_explicit_limit(self):
        db = FakeDatabase(rows=[])
        await PostgresCaseRetriever(db, top_k=3).search("fumée noire", limit=10)
        assert db.queries[0][1][0] == 10

    @pytest.mark.asyncio
    async def test_no_terms_no_query(self):
        db = FakeDatabase(rows=[CASE_ROW])
        assert await PostgresCaseRetriever(db).search("ça va ?") == []
        assert db.queries == []

    @pytest.mark.asyncio
    async def test_database_error_gives_empty_list(self):
        db = FakeDatabase(error=OSError("connection refused"))
        assert await PostgresCaseRetriever(db).search("perte de puissance") == []

    @pytest.mark.asyncio
    async def test_null_retriever(self):
        assert await NullRetriever().search("perte de puissance") == []

    def test_passage_to_dict(self):
        assert Passage(id="7", preview="FAP").to_dict() == {"id": "7", "preview": "FAP"}


class TestDatabase:
    @pytest.mark.asyncio
    async def test_unconfigured_database(self):
        db = Database(url=None)
        assert db.configured is False
        assert await db.connect() is False
        assert db.available is False
        assert await db.ping() is False

    @pytest.mark.asyncio
    async def test_queries_require_a_pool(self):
        db = Database(url=None)
        with pytest.raises(RuntimeError, match="not connected"):
            await db.fetch("select 1")
