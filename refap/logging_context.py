"""Session ID logging context for tracing a conversation across modules.

Attaches the current conversation's session identifier to every log
record, so one customer's turns can be followed from the HTTP boundary
through the decision core and out to the collaborators.

Usage:
    from refap.logging_context import set_session_id

    set_session_id("a1b2c3d4")
    logger.info("Routing computed")  # → [a1b2c3d4] Routing computed
"""

import logging
from contextvars import ContextVar

NO_SESSION = "NO_SESSION"

_session_id: ContextVar[str] = ContextVar("session_id", default=NO_SESSION)


def set_session_id(session_id: str) -> None:
    """Set the session ID for the current async context."""
    _session_id.set(session_id)


class SessionIdFilter(logging.Filter):
    """Injects session_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session_id"):
            record.session_id = _session_id.get()  # type: ignore[attr-defined]
        return True
