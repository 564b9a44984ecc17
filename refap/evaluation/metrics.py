"""
In-process counters for the chat service.

Counters are process-local and reset on restart. They are exposed as-is
by the metrics endpoint; nothing here feeds back into routing.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field

from refap.conversation.session import TurnResult
from refap.tools.leads import LeadOutcome

logger = logging.getLogger(__name__)


@dataclass
class ChatMetrics:
    """Running totals across all sessions."""

    # Traffic
    turns: int = 0
    sessions: int = 0
    degraded_turns: int = 0

    # Routing
    routes: Counter = field(default_factory=Counter)
    stage_transitions: Counter = field(default_factory=Counter)
    ready_sessions: int = 0

    # Model
    llm_successes: int = 0
    llm_failures: int = 0
    llm_timeouts: int = 0
    fallback_replies: int = 0

    # Leads
    leads_stored: int = 0
    leads_buffered: int = 0
    leads_failed: int = 0

    def record_turn(self, result: TurnResult) -> None:
        self.turns += 1
        if result.is_new_session:
            self.sessions += 1
        if result.degraded:
            self.degraded_turns += 1
        self.routes[result.decision.route.value] += 1
        if result.stage_changed:
            key = f"{result.previous_stage.value}->{result.stage.value}"
            self.stage_transitions[key] += 1
            self.ready_sessions += 1

    def record_llm(self, ok: bool, timed_out: bool = False) -> None:
        if ok:
            self.llm_successes += 1
        elif timed_out:
            self.llm_timeouts += 1
        else:
            self.llm_failures += 1

    def record_fallback(self) -> None:
        self.fallback_replies += 1

    def record_lead(self, outcome: LeadOutcome) -> None:
        if outcome == LeadOutcome.STORED:
            self.leads_stored += 1
        elif outcome == LeadOutcome.BUFFERED:
            self.leads_buffered += 1
        else:
            self.leads_failed += 1

    @property
    def degraded_rate(self) -> float:
        return self.degraded_turns / self.turns if self.turns else 0.0

    def snapshot(self, cache_hits: int = 0) -> dict:
        return {
            "turns": self.turns,
            "sessions": self.sessions,
            "degraded_turns": self.degraded_turns,
            "degraded_rate": round(self.degraded_rate, 3),
            "routes": dict(self.routes),
            "stage_transitions": dict(self.stage_transitions),
            "ready_sessions": self.ready_sessions,
            "llm": {
                "successes": self.llm_successes,
                "failures": self.llm_failures,
                "timeouts": self.llm_timeouts,
                "fallback_replies": self.fallback_replies,
                "cache_hits": cache_hits,
            },
            "leads": {
                "stored": self.leads_stored,
                "buffered": self.leads_buffered,
                "failed": self.leads_failed,
            },
        }
