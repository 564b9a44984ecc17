"""
Lead storage, store-and-forget.

The caller always gets an identifier back. When the database is missing
or the insert fails, the lead is kept in memory and the discrepancy is
logged; the customer is never told about the storage problem.
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Optional

import asyncpg
from pydantic import BaseModel, Field

from refap.config import settings
from refap.tools.database import Database
from refap.utils import normalize_phone

logger = logging.getLogger(__name__)

INSERT_LEAD_SQL = """
insert into bot.leads (id, session_id, name, phone, vehicle, postcode, note, source, created_at)
values ($1, $2, $3, $4, $5, $6, $7, $8, $9)
"""


class LeadRecord(BaseModel):
    """Contact details left by a customer."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    session_id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    vehicle: Optional[str] = None
    postcode: Optional[str] = None
    note: Optional[str] = None
    source: str = "form"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_slots(cls, session_id: str, slots: Mapping[str, str]) -> "LeadRecord":
        return cls(
            session_id=session_id,
            name=slots.get("contact_name"),
            phone=normalize_phone(slots["phone"]) if slots.get("phone") else None,
            vehicle=slots.get("vehicle"),
            postcode=slots.get("postcode"),
            note=slots.get("symptoms"),
            source="chat",
        )


class LeadOutcome(str, Enum):
    STORED = "stored"
    BUFFERED = "buffered"  # no database: kept in memory only
    FAILED = "failed"  # insert failed: kept in memory


class LeadStore:
    """Persists leads to ``bot.leads`` when possible, in memory otherwise.

    The in-memory buffer keeps the most recent ``buffer_size`` leads; older
    ones are dropped with a warning.
    """

    def __init__(self, db: Optional[Database] = None, buffer_size: Optional[int] = None) -> None:
        self.db = db
        size = settings.database.lead_buffer_size if buffer_size is None else buffer_size
        self.pending: deque[LeadRecord] = deque(maxlen=size)
        self.stored = 0
        self.buffered = 0
        self.failed = 0

    def _keep(self, lead: LeadRecord) -> None:
        if self.pending and len(self.pending) == self.pending.maxlen:
            logger.warning("Lead buffer full, dropping oldest: %s", self.pending[0].id)
        self.pending.append(lead)

    async def persist(self, lead: LeadRecord) -> LeadOutcome:
        if self.db is None or not self.db.available:
            self.buffered += 1
            self._keep(lead)
            logger.info("Lead kept in memory (no database): %s", lead.id)
            return LeadOutcome.BUFFERED

        try:
            await self.db.execute(
                INSERT_LEAD_SQL,
                lead.id, lead.session_id, lead.name, lead.phone, lead.vehicle,
                lead.postcode, lead.note, lead.source, lead.created_at,
            )
        except (OSError, asyncpg.PostgresError, asyncio.TimeoutError, RuntimeError) as e:
            self.failed += 1
            self._keep(lead)
            logger.warning("Lead storage failed, kept in memory: %s (%s)", lead.id, e)
            return LeadOutcome.FAILED

        self.stored += 1
        logger.info("Lead stored: %s (source=%s)", lead.id, lead.source)
        return LeadOutcome.STORED

    async def save(self, lead: LeadRecord) -> str:
        """Store-and-forget: the caller always gets the lead id back."""
        await self.persist(lead)
        return lead.id
