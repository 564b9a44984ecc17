"""
HTTP boundary for the Re-FAP Bot.

Routes:
    GET  /                      plain-text banner
    GET  /healthz               liveness + database ping
    POST /api/chat              one turn, JSON reply with CTAs
    POST /api/chat/stream       one turn over Server-Sent Events
    GET|POST /api/diagnose/stream  raw model stream with the mechanic persona
    POST /api/search            case-base retrieval side-channel
    POST /api/leads             contact capture (store-and-forget)
    GET  /api/metrics           in-process counters

Only request validation surfaces as an HTTP error on the chat endpoints;
every other failure degrades into a best-effort reply.
"""

import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sse_starlette.sse import EventSourceResponse

from refap.agents.diagnostic_agent import DiagnosticAgent
from refap.config import settings
from refap.conversation.routing import fallback_decision
from refap.conversation.state_machine import ConversationStage
from refap.logging_context import set_session_id
from refap.prompts.prompt_templates import build_fallback_reply
from refap.schemas.chat_schema import (
    ChatRequest,
    ChatResponse,
    LeadRequest,
    LeadResponse,
    SearchRequest,
    SearchResponse,
)
from refap.tools.database import Database
from refap.tools.leads import LeadRecord, LeadStore
from refap.tools.llm import LLMClient
from refap.tools.retrieval import PostgresCaseRetriever

logger = logging.getLogger(__name__)

BANNER = "Re-FAP Bot up. Try /healthz"
MISSING_MESSAGE = "message (string) requis"
MISSING_MESSAGES = "MISSING_MESSAGES"
HEARTBEAT_SECONDS = 15
CHAT_PATHS = ("/api/chat", "/api/chat/stream")


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


def _sse(data: dict[str, Any], event: Optional[str] = None) -> dict[str, str]:
    message = {"data": json.dumps(data, ensure_ascii=False)}
    if event:
        message["event"] = event
    return message


def parse_diagnose_messages(
    body: bytes, content_type: str, query: Optional[str]
) -> Optional[list[dict[str, Any]]]:
    """Accept ``{messages: [...]}``, ``{q: ...}``, ``?q=`` or a raw text body."""
    if query and query.strip():
        return DiagnosticAgent.persona_messages(query.strip())

    text = body.decode("utf-8", errors="replace").strip() if body else ""
    if not text:
        return None

    if "json" in content_type or text[:1] in "{[":
        try:
            payload = json.loads(text)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            messages = payload.get("messages")
            if isinstance(messages, list) and messages:
                return [m for m in messages if isinstance(m, dict) and "content" in m] or None
            for key in ("q", "message", "prompt"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return DiagnosticAgent.persona_messages(value.strip())
            return None
        if isinstance(payload, list):
            return [m for m in payload if isinstance(m, dict) and "content" in m] or None

    return DiagnosticAgent.persona_messages(text)


def create_app(agent: Optional[DiagnosticAgent] = None, db: Optional[Database] = None) -> FastAPI:
    """Build the application. Collaborators are wired in the lifespan unless injected."""
    database = db or Database()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.started_at = time.monotonic()
        if database.configured:
            await database.connect()
        if agent is not None:
            app.state.agent = agent
        else:
            retriever = PostgresCaseRetriever(database) if database.configured else None
            app.state.agent = DiagnosticAgent(
                llm=LLMClient(), retriever=retriever, leads=LeadStore(database)
            )
        logger.info(
            "%s listening on port %d (llm=%s, db=%s)",
            settings.business.bot_name, settings.port,
            "configured" if app.state.agent.llm.configured else "fallback script",
            "connected" if database.available else "disabled",
        )
        yield
        await database.close()

    app = FastAPI(title=settings.business.bot_name, version="0.1.0", lifespan=lifespan)
    app.state.db = database
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        if request.url.path in CHAT_PATHS:
            return _error(400, MISSING_MESSAGE)
        fields = [".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()]
        return _error(400, f"requête invalide: {', '.join(f for f in fields if f) or 'corps'}")

    def _agent(request: Request) -> DiagnosticAgent:
        return request.app.state.agent

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return BANNER

    @app.get("/healthz")
    async def healthz(request: Request):
        body = {
            "status": "ok",
            "uptime": round(time.monotonic() - request.app.state.started_at, 1),
            "port": settings.port,
            "db": "disabled",
        }
        if database.configured:
            if not await database.ping():
                return JSONResponse(status_code=503, content={"status": "db_error"})
            body["db"] = "ok"
        return body

    @app.post("/api/chat")
    async def chat(payload: ChatRequest, request: Request):
        agent_ = _agent(request)
        violation = agent_.guardrails.check_user_input(payload.message)
        if violation is not None:
            return _error(400, violation.message)

        try:
            reply = await agent_.respond(payload.message, payload.session_id)
        except Exception:
            logger.exception("Unexpected failure in chat turn")
            return _degraded_response(agent_, payload.session_id)
        response = ChatResponse.model_validate(
            reply.to_payload(include_debug=settings.conversation.debug_reasons)
        )
        return response.model_dump(by_alias=True, exclude=None if response.debug else {"debug"})

    @app.post("/api/chat/stream")
    async def chat_stream(payload: ChatRequest, request: Request):
        agent_ = _agent(request)
        violation = agent_.guardrails.check_user_input(payload.message)
        if violation is not None:
            return _error(400, violation.message)

        async def events():
            try:
                async for event, data in agent_.stream(payload.message, payload.session_id):
                    yield _sse(data, event)
            except Exception:
                logger.exception("Unexpected failure in streamed chat turn")
                yield _sse({"error": "INTERNAL"}, "error")

        return EventSourceResponse(events(), ping=HEARTBEAT_SECONDS)

    @app.api_route("/api/diagnose/stream", methods=["GET", "POST"])
    async def diagnose_stream(request: Request, q: Optional[str] = None):
        agent_ = _agent(request)
        body = await request.body() if request.method == "POST" else b""
        messages = parse_diagnose_messages(body, request.headers.get("content-type", ""), q)

        async def events():
            if not messages:
                yield _sse({"error": MISSING_MESSAGES})
                return
            try:
                async for data in agent_.diagnose(messages):
                    yield _sse(data)
            except Exception:
                logger.exception("Unexpected failure in diagnose stream")
                yield _sse({"error": "INTERNAL"})

        return EventSourceResponse(events(), ping=HEARTBEAT_SECONDS)

    @app.post("/api/search", response_model=SearchResponse)
    async def search(payload: SearchRequest, request: Request) -> dict[str, Any]:
        passages = await _agent(request).search(payload.question, payload.limit)
        return {"items": [p.to_dict() for p in passages]}

    @app.post("/api/leads", response_model=LeadResponse)
    async def leads(payload: LeadRequest, request: Request) -> dict[str, Any]:
        if payload.session_id:
            set_session_id(payload.session_id)
        lead = LeadRecord(
            session_id=payload.session_id,
            name=payload.name,
            phone=payload.phone,
            vehicle=payload.vehicle,
            postcode=payload.postcode,
            note=payload.note,
            source="form",
        )
        lead_id = await _agent(request).save_lead(lead)
        return {"ok": True, "id": lead_id}

    @app.get("/api/metrics")
    async def metrics(request: Request) -> dict[str, Any]:
        agent_ = _agent(request)
        snapshot = agent_.metrics.snapshot(cache_hits=agent_.llm.cache_hits)
        snapshot["active_sessions"] = len(agent_.sessions.store)
        return snapshot

    return app


def _degraded_response(agent: DiagnosticAgent, session_id: Optional[str]) -> dict[str, Any]:
    decision = fallback_decision(agent.sessions.catalog)
    # A known session never reports an earlier stage than it has reached.
    session = agent.sessions.find(session_id)
    stage = session.stage if session is not None else ConversationStage.GATHERING
    return {
        "sessionId": session_id or agent.sessions.new_session_id(),
        "reply": build_fallback_reply(stage, decision, None, degraded=True),
        "stage": stage.value,
        "next": None,
        "ctas": [cta.to_dict() for cta in decision.ctas],
        "cta": decision.primary.to_dict() if decision.primary else None,
    }


app = create_app()
