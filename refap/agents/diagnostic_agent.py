"""
Diagnostic agent: composes the reply for one customer turn.

The decision core (extraction, slots, stage, routing) runs first and
synchronously under the session lock. Only then are the collaborators
consulted: case retrieval for prompt context, the model for the reply
text, lead storage for contact details. Every collaborator failure
degrades; the customer always gets a reply and the CTAs computed from
the slots already known.
"""

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

from refap.conversation.guardrails import GuardrailPipeline
from refap.conversation.session import ConversationSession, SessionManager, TurnResult
from refap.evaluation.metrics import ChatMetrics
from refap.logging_context import set_session_id
from refap.prompts.prompt_templates import build_fallback_reply, build_messages, build_turn_prompt
from refap.prompts.system_prompts import MECHANIC_PERSONA
from refap.tools.leads import LeadRecord, LeadStore
from refap.tools.llm import LLMClient, LLMTimeoutError, LLMUnavailableError
from refap.tools.retrieval import CaseRetriever, NullRetriever, Passage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentReply:
    """User-visible outcome of one turn."""

    session_id: str
    reply: str
    result: TurnResult
    degraded: bool = False

    def to_payload(self, include_debug: bool = False) -> dict[str, Any]:
        decision = self.result.decision
        payload = {
            "sessionId": self.session_id,
            "reply": self.reply,
            "stage": self.result.stage.value,
            "next": self.result.next_slot.name.value if self.result.next_slot else None,
            "ctas": [cta.to_dict() for cta in decision.ctas],
            "cta": decision.primary.to_dict() if decision.primary else None,
        }
        if include_debug:
            payload["debug"] = {
                "decision": decision.to_dict(include_reasons=True),
                "slots": dict(self.result.slots),
                "signals": list(self.result.signals.fired),
                "degraded": self.degraded,
            }
        return payload


def meta_payload(result: TurnResult) -> dict[str, Any]:
    decision = result.decision
    return {
        "sessionId": result.session_id,
        "stage": result.stage.value,
        "next": result.next_slot.name.value if result.next_slot else None,
        "ctas": [cta.to_dict() for cta in decision.ctas],
        "cta": decision.primary.to_dict() if decision.primary else None,
    }


class DiagnosticAgent:
    """Runs decision core, retrieval, model call and sanitisation for a turn."""

    def __init__(
        self,
        sessions: Optional[SessionManager] = None,
        llm: Optional[LLMClient] = None,
        retriever: Optional[CaseRetriever] = None,
        leads: Optional[LeadStore] = None,
        guardrails: Optional[GuardrailPipeline] = None,
        metrics: Optional[ChatMetrics] = None,
    ) -> None:
        self.sessions = sessions or SessionManager()
        self.llm = llm or LLMClient()
        self.retriever: CaseRetriever = retriever or NullRetriever()
        self.leads = leads or LeadStore()
        self.guardrails = guardrails or GuardrailPipeline()
        self.metrics = metrics or ChatMetrics()

    async def respond(self, message: str, session_id: Optional[str] = None) -> AgentReply:
        """Blocking turn: returns the sanitised reply and the turn's CTAs."""
        async with self.sessions.turn(session_id) as session:
            set_session_id(session.session_id)
            result = self._decide(session, message)
            messages = await self._prompt_messages(session, result, message)

            degraded = result.degraded
            if self.llm.configured:
                try:
                    text = await self.llm.complete(messages)
                    self.metrics.record_llm(True)
                except LLMTimeoutError:
                    logger.warning("Model timed out, using fallback reply")
                    self.metrics.record_llm(False, timed_out=True)
                    text, degraded = self._fallback(result, degraded=True), True
                except LLMUnavailableError as e:
                    logger.warning("Model unavailable, using fallback reply: %s", e)
                    self.metrics.record_llm(False)
                    text, degraded = self._fallback(result, degraded=True), True
            else:
                text = self._fallback(result, degraded=degraded)

            reply = self._finish(session, result, message, text, degraded)
            await self._capture_lead(session, result)
            return AgentReply(
                session_id=session.session_id, reply=reply, result=result, degraded=degraded
            )

    async def stream(
        self, message: str, session_id: Optional[str] = None
    ) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        """Streaming turn: yields ``(event, data)`` pairs.

        ``meta`` first (CTAs are known before any text), then ``delta``
        chunks of raw model text, then ``done`` with the sanitised reply.
        A model failure yields ``error`` before ``done``; the partial text
        is dropped and ``done`` carries the fallback reply instead.
        """
        async with self.sessions.turn(session_id) as session:
            set_session_id(session.session_id)
            result = self._decide(session, message)
            yield "meta", meta_payload(result)

            messages = await self._prompt_messages(session, result, message)
            degraded = result.degraded
            text: Optional[str] = None

            if self.llm.configured:
                parts: list[str] = []
                try:
                    async for delta in self.llm.stream(messages):
                        parts.append(delta)
                        yield "delta", {"delta": delta}
                    self.metrics.record_llm(True)
                    text = "".join(parts)
                except LLMTimeoutError:
                    logger.warning("Model stream timed out, using fallback reply")
                    self.metrics.record_llm(False, timed_out=True)
                    yield "error", {"error": "LLM_TIMEOUT"}
                    degraded = True
                except LLMUnavailableError as e:
                    logger.warning("Model stream failed, using fallback reply: %s", e)
                    self.metrics.record_llm(False)
                    yield "error", {"error": "LLM_UNAVAILABLE"}
                    degraded = True

            if text is None:
                text = self._fallback(result, degraded=degraded)
                if not self.llm.configured:
                    yield "delta", {"delta": text}

            reply = self._finish(session, result, message, text, degraded)
            await self._capture_lead(session, result)
            yield "done", {"sessionId": session.session_id, "reply": reply, "degraded": degraded}

    async def diagnose(self, messages: Sequence[dict[str, Any]]) -> AsyncIterator[dict[str, Any]]:
        """Raw model stream, outside the slot-filling flow."""
        try:
            async for delta in self.llm.stream(messages):
                yield {"delta": delta}
        except LLMTimeoutError:
            self.metrics.record_llm(False, timed_out=True)
            yield {"error": "TIMEOUT"}
            return
        except LLMUnavailableError as e:
            self.metrics.record_llm(False)
            yield {"error": str(e)}
            return
        self.metrics.record_llm(True)
        yield {"done": True}

    @staticmethod
    def persona_messages(text: str) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": MECHANIC_PERSONA},
            {"role": "user", "content": text},
        ]

    async def search(self, question: str, limit: Optional[int] = None) -> list[Passage]:
        try:
            return await self.retriever.search(question, limit)
        except Exception:
            logger.warning("Retriever raised, returning no passages", exc_info=True)
            return []

    async def save_lead(self, lead: LeadRecord) -> str:
        outcome = await self.leads.persist(lead)
        self.metrics.record_lead(outcome)
        return lead.id

    def _decide(self, session: ConversationSession, message: str) -> TurnResult:
        result = self.sessions.process_turn(session, message)
        self.metrics.record_turn(result)
        return result

    async def _prompt_messages(
        self, session: ConversationSession, result: TurnResult, message: str
    ) -> list[dict[str, str]]:
        passages = await self.search(message) if self.llm.configured else []
        system_prompt = build_turn_prompt(
            result.stage,
            result.decision,
            result.slots,
            result.next_question,
            passages=[p.preview for p in passages],
        )
        return build_messages(system_prompt, session.history, message)

    def _fallback(self, result: TurnResult, degraded: bool) -> str:
        self.metrics.record_fallback()
        return build_fallback_reply(
            result.stage, result.decision, result.next_question, degraded=degraded
        )

    def _finish(
        self,
        session: ConversationSession,
        result: TurnResult,
        message: str,
        text: str,
        degraded: bool,
    ) -> str:
        sanitized = self.guardrails.sanitize_reply(text, result.decision.ctas)
        reply = sanitized.text or self._fallback(result, degraded=True)
        session.add_exchange(message, reply)
        return reply

    async def _capture_lead(self, session: ConversationSession, result: TurnResult) -> None:
        if session.lead_captured:
            return
        if not (result.slots.get("contact_name") and result.slots.get("phone")):
            return
        session.lead_captured = True
        lead_id = await self.save_lead(LeadRecord.from_slots(session.session_id, result.slots))
        logger.info("Lead captured from chat: %s", lead_id)
