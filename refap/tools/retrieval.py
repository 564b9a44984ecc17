"""
Retrieval collaborator over the technical case base (``bot.case_technique``).

Passages only enrich the model prompt; the decision core never reads
them. Any failure yields an empty list.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol

import asyncpg

from refap.config import settings
from refap.tools.database import Database
from refap.utils import truncate

logger = logging.getLogger(__name__)

PREVIEW_MAX_CHARS = 240
MIN_TERM_LENGTH = 4

SEARCH_SQL = """
select id, categorie, titre, symptomes, codes_obd, solutions
from bot.case_technique
where {clause}
limit $1
"""

_CASE_TEXT = (
    "concat_ws(' ', categorie, titre, array_to_string(symptomes, ' '), "
    "array_to_string(codes_obd, ' '), array_to_string(solutions, ' '))"
)


@dataclass(frozen=True)
class Passage:
    id: str
    preview: str

    def to_dict(self) -> dict:
        return {"id": self.id, "preview": self.preview}


class CaseRetriever(Protocol):
    async def search(self, question: str, limit: Optional[int] = None) -> list[Passage]: ...


class NullRetriever:
    """Retriever used when no database is configured."""

    async def search(self, question: str, limit: Optional[int] = None) -> list[Passage]:
        return []


def search_terms(question: str) -> list[str]:
    """Distinct lowercase words long enough to be meaningful in a keyword search."""
    seen: list[str] = []
    for word in re.findall(r"\w+", question.lower()):
        if len(word) >= MIN_TERM_LENGTH and word not in seen:
            seen.append(word)
    return seen[:8]


def case_preview(row: dict) -> str:
    pieces = [row.get("titre") or ""]
    symptoms = row.get("symptomes") or []
    if symptoms:
        pieces.append("symptômes : " + ", ".join(symptoms))
    codes = row.get("codes_obd") or []
    if codes:
        pieces.append("codes : " + ", ".join(codes))
    solutions = row.get("solutions") or []
    if solutions:
        pieces.append("pistes : " + " | ".join(solutions))
    return truncate(" ; ".join(p for p in pieces if p), PREVIEW_MAX_CHARS)


class PostgresCaseRetriever:
    """Keyword (ILIKE) search over the case table."""

    def __init__(self, db: Database, top_k: Optional[int] = None) -> None:
        self.db = db
        self.top_k = top_k or settings.database.retrieval_top_k

    async def search(self, question: str, limit: Optional[int] = None) -> list[Passage]:
        terms = search_terms(question or "")
        if not terms or not self.db.available:
            return []

        params: list = [limit or self.top_k]
        clauses = []
        for term in terms:
            params.append(f"%{term}%")
            clauses.append(f"{_CASE_TEXT} ilike ${len(params)}")
        query = SEARCH_SQL.format(clause=" or ".join(clauses))

        try:
            rows = await self.db.fetch(query, *params)
        except (OSError, asyncpg.PostgresError, asyncio.TimeoutError, RuntimeError) as e:
            logger.warning("Case retrieval failed, continuing without context: %s", e)
            return []

        passages = [Passage(id=str(row["id"]), preview=case_preview(row)) for row in rows]
        logger.debug("Retrieved %d case(s) for %d term(s)", len(passages), len(terms))
        return passages
