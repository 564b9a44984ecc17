"""
Conversation sessions and the per-turn decision pipeline.

Sessions live behind a ``SessionStore`` interface (get / set / merge) so
the decision core does not depend on deployment topology. The default
``InMemorySessionStore`` keeps them for the process lifetime; a restart
loses them.

Each turn runs synchronously under the session's lock: extraction, slot
merge, stage evaluation, routing, and choice of the next question never
suspend, so two turns for the same session cannot interleave their slot
updates.

Usage:
    manager = SessionManager()
    async with manager.turn(None) as session:
        result = manager.process_turn(session, "voyant FAP allumé")
"""

import asyncio
import logging
import re
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Mapping, Optional, Protocol, Sequence

from refap.config import settings
from refap.conversation.routing import decide_routing, fallback_decision
from refap.conversation.signals import SignalPattern, SignalSet, extract_signals, load_signal_patterns
from refap.conversation.slot_manager import (
    SlotDefinition,
    SlotName,
    SlotStore,
    get_definition,
    parse_pending_answer,
    slots_from_signals,
    soft_extract_slots,
)
from refap.conversation.state_machine import ConversationStage, StageMachine
from refap.schemas.routing_schema import RoutingDecision
from refap.tools.cta_catalog import CtaCatalog
from refap.utils import truncate

logger = logging.getLogger(__name__)

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{6,64}$")


def _history_buffer() -> deque:
    return deque(maxlen=settings.conversation.history_turns * 2)


@dataclass
class ConversationSession:
    """One ongoing conversation. Owns its slot map exclusively."""

    session_id: str
    slots: SlotStore = field(default_factory=SlotStore)
    stage_machine: StageMachine = field(default_factory=StageMachine)
    history: deque = field(default_factory=_history_buffer)
    pending_slot: Optional[str] = None
    turn_count: int = 0
    lead_captured: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def stage(self) -> ConversationStage:
        return self.stage_machine.current_stage

    def add_exchange(self, user_text: str, assistant_text: str) -> None:
        """Append one exchange to the rolling LLM context (not authoritative state)."""
        self.history.append({"role": "user", "content": user_text})
        self.history.append({"role": "assistant", "content": assistant_text})


class SessionStore(Protocol):
    """Storage seam for sessions."""

    def get(self, session_id: str) -> Optional[ConversationSession]: ...

    def set(self, session: ConversationSession) -> None: ...

    def merge(self, session_id: str, incoming: Mapping[str, str]) -> list[str]: ...

    def __len__(self) -> int: ...


class InMemorySessionStore:
    """Process-lifetime session table keyed by session id."""

    def __init__(self) -> None:
        self._sessions: dict[str, ConversationSession] = {}

    def get(self, session_id: str) -> Optional[ConversationSession]:
        return self._sessions.get(session_id)

    def set(self, session: ConversationSession) -> None:
        self._sessions[session.session_id] = session

    def merge(self, session_id: str, incoming: Mapping[str, str]) -> list[str]:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        return session.slots.merge(incoming)

    def __len__(self) -> int:
        return len(self._sessions)


@dataclass(frozen=True)
class TurnResult:
    """What one turn decided. Only ctas / missing slots / next question leave the turn."""

    session_id: str
    stage: ConversationStage
    previous_stage: ConversationStage
    decision: RoutingDecision
    next_slot: Optional[SlotDefinition]
    signals: SignalSet
    changed_slots: tuple[str, ...]
    slots: Mapping[str, str]
    degraded: bool = False
    is_new_session: bool = False

    @property
    def stage_changed(self) -> bool:
        return self.stage != self.previous_stage

    @property
    def next_question(self) -> Optional[str]:
        return self.next_slot.prompt_hint if self.next_slot else None


class SessionManager:
    """Owns sessions and runs the per-turn decision pipeline."""

    def __init__(
        self,
        store: Optional[SessionStore] = None,
        patterns: Optional[Sequence[SignalPattern]] = None,
        catalog: Optional[CtaCatalog] = None,
    ) -> None:
        self.store: SessionStore = store if store is not None else InMemorySessionStore()
        self.patterns = (
            list(patterns) if patterns is not None
            else load_signal_patterns(settings.conversation.signal_patterns_path)
        )
        self.catalog = catalog or CtaCatalog()

    @staticmethod
    def new_session_id() -> str:
        return uuid.uuid4().hex

    def get_or_create(self, session_id: Optional[str]) -> tuple[ConversationSession, bool]:
        """Return the session for ``session_id``, creating it when unknown.

        A missing or malformed identifier gets a fresh server-generated one.
        """
        if session_id and SESSION_ID_RE.match(session_id):
            existing = self.store.get(session_id)
            if existing is not None:
                return existing, False
        else:
            session_id = self.new_session_id()
        session = ConversationSession(session_id=session_id)
        self.store.set(session)
        logger.info("Session created: %s", session_id)
        return session, True

    def find(self, session_id: Optional[str]) -> Optional[ConversationSession]:
        """Existing session for a well-formed id, without creating one."""
        if session_id and SESSION_ID_RE.match(session_id):
            return self.store.get(session_id)
        return None

    @asynccontextmanager
    async def turn(self, session_id: Optional[str]) -> AsyncIterator[ConversationSession]:
        """Serialize turns per session: turn N+1 waits until turn N is finished."""
        session, _ = self.get_or_create(session_id)
        async with session.lock:
            yield session

    def extract(self, message: str, pending_slot: Optional[str] = None,
                slots: Optional[SlotStore] = None) -> tuple[SignalSet, dict[str, str]]:
        """Signals + soft slots + answer to the pending question, for one message."""
        signals = extract_signals(message, self.patterns)
        incoming = slots_from_signals(signals)
        incoming.update(soft_extract_slots(message))

        if pending_slot and pending_slot not in incoming:
            already = slots.has(pending_slot) if slots is not None else False
            defn = get_definition(pending_slot)
            if not already and (defn.answer_parser is not None or not incoming):
                answer = parse_pending_answer(pending_slot, message)
                if answer:
                    incoming[pending_slot] = answer
        return signals, incoming

    def process_turn(self, session: ConversationSession, message: str) -> TurnResult:
        """Run one synchronous decision pass and mutate the session's slots."""
        previous_stage = session.stage
        is_new_session = session.turn_count == 0
        degraded = False
        signals = SignalSet()

        try:
            signals, incoming = self.extract(message, session.pending_slot, session.slots)
            changed = self.store.merge(session.session_id, incoming)
        except Exception:
            logger.warning(
                "Slot extraction failed, keeping message as a symptom note", exc_info=True
            )
            degraded = True
            note = truncate(message, settings.conversation.free_text_answer_max_chars)
            changed = self.store.merge(session.session_id, {SlotName.SYMPTOMS.value: note})

        stage = session.stage_machine.advance(session.slots.all_required_filled())
        slots = session.slots.to_dict()

        try:
            decision = decide_routing(slots, self.catalog)
        except Exception:
            logger.warning("Routing failed, using generic fallback decision", exc_info=True)
            degraded = True
            decision = fallback_decision(self.catalog)

        next_slot = self._next_slot(session, stage, decision)
        session.pending_slot = next_slot.name.value if next_slot else None
        session.turn_count += 1

        logger.info(
            "Turn %d: stage=%s route=%s score=%d next=%s",
            session.turn_count, stage.value, decision.route.value, decision.score,
            session.pending_slot,
        )
        return TurnResult(
            session_id=session.session_id,
            stage=stage,
            previous_stage=previous_stage,
            decision=decision,
            next_slot=next_slot,
            signals=signals,
            changed_slots=tuple(changed),
            slots=slots,
            degraded=degraded,
            is_new_session=is_new_session,
        )

    @staticmethod
    def _next_slot(
        session: ConversationSession, stage: ConversationStage, decision: RoutingDecision
    ) -> Optional[SlotDefinition]:
        if stage == ConversationStage.GATHERING:
            return session.slots.get_next_empty_slot()
        for name in decision.missing_slots:
            if not session.slots.has(name):
                return get_definition(name)
        return None
