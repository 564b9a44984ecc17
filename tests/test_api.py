"""HTTP boundary tests, run through FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient

from refap.api.main import BANNER, MISSING_MESSAGE, create_app, parse_diagnose_messages
from refap.prompts.prompt_templates import DEGRADED_OPENER
from refap.prompts.system_prompts import MECHANIC_PERSONA
from refap.tools.database import Database
from tests.conftest import FakeDatabase, make_agent, parse_sse

FAP_MESSAGE = "Voyant FAP allumé, perte de puissance, trajets courts en ville"


@pytest.fixture(scope="module")
def client():
    app = create_app(agent=make_agent(), db=Database(url=None))
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    def test_banner(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.text == BANNER

    def test_healthz_without_database(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "ok"
        assert body["db"] == "disabled"
        assert body["uptime"] >= 0

    def test_healthz_database_ok(self):
        app = create_app(agent=make_agent(), db=FakeDatabase())
        with TestClient(app) as local:
            assert local.get("/healthz").json()["db"] == "ok"

    def test_healthz_database_down(self):
        app = create_app(agent=make_agent(), db=FakeDatabase(healthy=False))
        with TestClient(app) as local:
            response = local.get("/healthz")
        assert response.status_code == 503
        assert response.json() == {"status": "db_error"}


class TestChat:
    @pytest.mark.parametrize("body", [{}, {"message": 5}, {"message": "   "}, {"sessionId": "abc"}])
    def test_missing_message(self, client, body):
        response = client.post("/api/chat", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": MISSING_MESSAGE}

    def test_too_long_message(self, client):
        response = client.post("/api/chat", json={"message": "x" * 5000})
        assert response.status_code == 400
        assert "trop long" in response.json()["error"]

    def test_reply_shape(self, client):
        body = client.post("/api/chat", json={"message": FAP_MESSAGE}).json()
        assert set(body) == {"sessionId", "reply", "stage", "next", "ctas", "cta"}
        assert body["stage"] == "GATHERING"
        assert body["next"] == "vehicle"
        assert body["cta"] == body["ctas"][0]
        assert len(body["ctas"]) <= 3

    def test_session_continues(self, client):
        first = client.post("/api/chat", json={"message": FAP_MESSAGE}).json()
        second = client.post(
            "/api/chat", json={"message": "C'est une Peugeot 308 1.6 HDi", "sessionId": first["sessionId"]}
        ).json()
        assert second["sessionId"] == first["sessionId"]
        assert second["stage"] == "READY_TO_OFFER"
        assert second["next"] == "postcode"

    def test_unexpected_failure_degrades(self, client, monkeypatch):
        async def boom(*args, **kwargs):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(client.app.state.agent, "respond", boom)
        response = client.post("/api/chat", json={"message": "bonjour"})
        assert response.status_code == 200
        body = response.json()
        assert body["reply"].startswith(DEGRADED_OPENER)
        assert body["cta"]["id"] == "garage_finder"
        assert body["stage"] == "GATHERING"

    def test_failure_keeps_reached_stage(self, client, monkeypatch):
        first = client.post("/api/chat", json={"message": FAP_MESSAGE}).json()
        ready = client.post(
            "/api/chat", json={"message": "Peugeot 308 1.6 HDi", "sessionId": first["sessionId"]}
        ).json()
        assert ready["stage"] == "READY_TO_OFFER"

        async def boom(*args, **kwargs):
            raise RuntimeError("unexpected")

        monkeypatch.setattr(client.app.state.agent, "respond", boom)
        body = client.post(
            "/api/chat", json={"message": "et maintenant ?", "sessionId": first["sessionId"]}
        ).json()
        assert body["sessionId"] == first["sessionId"]
        assert body["stage"] == "READY_TO_OFFER"
        assert body["reply"].startswith(DEGRADED_OPENER)


class TestChatStream:
    def test_events(self, client):
        response = client.post("/api/chat/stream", json={"message": FAP_MESSAGE})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = parse_sse(response.text)
        names = [name for name, _ in events]
        assert names[0] == "meta"
        assert names[-1] == "done"
        assert events[0][1]["cta"]["id"] == "diagnostic_booking"
        deltas = "".join(data["delta"] for name, data in events if name == "delta")
        assert deltas == events[-1][1]["reply"]

    def test_missing_message(self, client):
        response = client.post("/api/chat/stream", json={})
        assert response.status_code == 400
        assert response.json() == {"error": MISSING_MESSAGE}


class TestDiagnoseStream:
    def test_query_string(self, client):
        response = client.get("/api/diagnose/stream", params={"q": "fumée noire"})
        events = [data for _, data in parse_sse(response.text)]
        assert events[-1] == {"done": True}
        assert all("delta" in e for e in events[:-1])

    def test_json_messages(self, client):
        response = client.post("/api/diagnose/stream", json={
            "messages": [{"role": "user", "content": "voyant moteur"}],
        })
        assert parse_sse(response.text)[-1][1] == {"done": True}

    def test_raw_text_body(self, client):
        response = client.post(
            "/api/diagnose/stream", content="perte de puissance",
            headers={"content-type": "text/plain"},
        )
        assert parse_sse(response.text)[-1][1] == {"done": True}

    def test_missing_messages(self, client):
        response = client.post("/api/diagnose/stream", json={})
        assert parse_sse(response.text) == [(None, {"error": "MISSING_MESSAGES"})]


class TestParseDiagnoseMessages:
    def test_query_wins(self):
        messages = parse_diagnose_messages(b'{"q": "ignored"}', "application/json", "fumée")
        assert messages == [
            {"role": "system", "content": MECHANIC_PERSONA},
            {"role": "user", "content": "fumée"},
        ]

    def test_messages_filtered(self):
        body = b'{"messages": [{"role": "user", "content": "a"}, {"role": "user"}, "x"]}'
        assert parse_diagnose_messages(body, "application/json", None) == [
            {"role": "user", "content": "a"}
        ]

    def test_q_in_json(self):
        messages = parse_diagnose_messages(b'{"q": "voyant"}', "application/json", None)
        assert messages[-1] == {"role": "user", "content": "voyant"}

    def test_empty(self):
        assert parse_diagnose_messages(b"", "", None) is None
        assert parse_diagnose_messages(b'{"messages": []}', "application/json", None) is None

    def test_invalid_json_is_plain_text(self):
        messages = parse_diagnose_messages(b"{pas du json", "application/json", None)
        assert messages[-1]["content"] == "{pas du json"


class TestSideChannels:
    def test_search_without_case_base(self, client):
        response = client.post("/api/search", json={"question": "perte de puissance"})
        assert response.status_code == 200
        assert response.json() == {"items": []}

    def test_search_limit_validated(self, client):
        response = client.post("/api/search", json={"question": "fap", "limit": 50})
        assert response.status_code == 400

    def test_lead_always_acknowledged(self, client):
        response = client.post("/api/leads", json={
            "name": "Julie Martin", "phone": "06 12 34 56 78", "postcode": "75001",
        })
        body = response.json()
        assert body["ok"] is True
        assert body["id"]
        stored = client.app.state.agent.leads.pending[-1]
        assert stored.id == body["id"]
        assert stored.source == "form"

    def test_metrics(self, client):
        client.post("/api/chat", json={"message": "bonjour"})
        body = client.get("/api/metrics").json()
        assert body["turns"] >= 1
        assert body["active_sessions"] >= 1
        assert set(body["llm"]) >= {"successes", "failures", "timeouts", "cache_hits"}
