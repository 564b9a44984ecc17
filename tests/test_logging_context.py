"""Tests for the session-id logging filter."""

import asyncio
import logging

import pytest

from refap.logging_context import NO_SESSION, SessionIdFilter, set_session_id


def _record() -> logging.LogRecord:
    return logging.LogRecord("refap.test", logging.INFO, __file__, 1, "msg", None, None)


class TestSessionIdFilter:
    def test_injects_current_session_id(self):
        async def scenario():
            set_session_id("abc123")
            record = _record()
            assert SessionIdFilter().filter(record) is True
            return record.session_id

        assert asyncio.run(scenario()) == "abc123"

    def test_default_outside_a_session(self):
        async def scenario():
            record = _record()
            SessionIdFilter().filter(record)
            return record.session_id

        assert asyncio.run(scenario()) == NO_SESSION

    def test_explicit_session_id_is_kept(self):
        record = _record()
        record.session_id = "explicit"
        SessionIdFilter().filter(record)
        assert record.session_id == "explicit"

    @pytest.mark.asyncio
    async def test_tasks_do_not_share_session_ids(self):
        async def tagged(session_id):
            set_session_id(session_id)
            await asyncio.sleep(0)
            record = _record()
            SessionIdFilter().filter(record)
            return record.session_id

        assert await asyncio.gather(tagged("s-one"), tagged("s-two")) == ["s-one", "s-two"]
