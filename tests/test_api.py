"""
HTTP surface tests.

Verifies:
- Session header issue, reuse, rotation and reset
- Conversation create / read / post / log, including ownership checks
- Usage quotas map to 429 and denied requests are not counted
- Stable error bodies for validation and upstream failures
- Voice session endpoints (metered grant, live mode gate, offer, teardown)
"""
import uuid

import pytest
from fastapi.testclient import TestClient

from chat_server.server import SESSION_HEADER, SESSION_STATUS_HEADER, create_app
from orchestration.config import UsageLimitConfig
from orchestration.errors import UpstreamFailure
from usage_limits import UsageEvent

from conftest import FakePlanner, FakeSpecialist


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def client(services):
    """FastAPI test client (lifespan enabled)."""
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _session(client):
    response = client.get("/sessions/current")
    return response.headers[SESSION_HEADER]


def _conversation(client, session_id):
    response = client.post("/conversations", headers={SESSION_HEADER: session_id})
    assert response.status_code == 201
    return response.json()["id"]


def _limited(**session_limits):
    events = [e.value for e in UsageEvent]
    return UsageLimitConfig(
        session_limits={e: session_limits.get(e) for e in events},
        origin_limits={e: None for e in events},
        logs_enabled=True,
    )


class TestSessions:

    def test_new_session_issued(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.headers[SESSION_STATUS_HEADER] == "new"
        uuid.UUID(response.headers[SESSION_HEADER])

    def test_known_session_reused(self, client):
        session_id = _session(client)

        response = client.get("/sessions/current", headers={SESSION_HEADER: session_id})

        assert response.headers[SESSION_HEADER] == session_id
        assert SESSION_STATUS_HEADER not in response.headers
        assert response.json()["sessionId"] == session_id

    def test_unknown_session_rotated(self, client):
        response = client.get("/health", headers={SESSION_HEADER: str(uuid.uuid4())})

        assert response.headers[SESSION_STATUS_HEADER] == "rotated"

    def test_malformed_session_replaced(self, client):
        response = client.get("/health", headers={SESSION_HEADER: "hello"})

        assert response.headers[SESSION_STATUS_HEADER] == "new"
        assert response.headers[SESSION_HEADER] != "hello"

    def test_reset_session(self, client):
        old = _session(client)

        response = client.post("/sessions/reset", headers={SESSION_HEADER: old})
        new = response.json()["sessionId"]

        assert new != old
        assert response.headers[SESSION_HEADER] == new
        assert response.headers[SESSION_STATUS_HEADER] == "new"

        again = client.get("/health", headers={SESSION_HEADER: old})
        assert again.headers[SESSION_STATUS_HEADER] == "rotated"
        assert again.headers[SESSION_HEADER] not in (old, new)


class TestConversations:

    def test_create_and_read(self, client):
        session_id = _session(client)

        created = client.post("/conversations", headers={SESSION_HEADER: session_id})
        conversation_id = created.json()["id"]
        messages = client.get(f"/conversations/{conversation_id}/messages", headers={SESSION_HEADER: session_id})

        assert created.status_code == 201
        assert created.json()["sessionId"] == session_id
        assert messages.status_code == 200
        assert messages.json()["messages"] == []

    def test_post_message(self, client, services):
        session_id = _session(client)
        conversation_id = _conversation(client, session_id)

        response = client.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "Hello"},
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["sessionId"] == session_id
        assert [r["responder"] for r in body["responses"]] == ["greeting"]
        assert [m["role"] for m in body["conversation"]["messages"]] == ["user", "assistant"]
        assert len(services.locks) == 0

    def test_blank_content_rejected(self, client):
        session_id = _session(client)
        conversation_id = _conversation(client, session_id)

        response = client.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "   "},
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Message content is required", "code": "validation_error"}

    def test_unknown_source_rejected(self, client):
        session_id = _session(client)
        conversation_id = _conversation(client, session_id)

        response = client.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "hi", "source": "telepathy"},
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 400

    def test_unknown_conversation(self, client):
        session_id = _session(client)

        response = client.get("/conversations/missing/messages", headers={SESSION_HEADER: session_id})

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_other_sessions_conversation_forbidden(self, client):
        owner = _session(client)
        intruder = _session(client)
        conversation_id = _conversation(client, owner)

        response = client.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "hi"},
            headers={SESSION_HEADER: intruder},
        )

        assert response.status_code == 403

    def test_multipart_upload(self, make_services, make_orchestrator):
        services = make_services(orchestrator=make_orchestrator(
            specialists=[FakeSpecialist("greeting"), FakeSpecialist("document_store")],
        ))
        with TestClient(create_app(services)) as client:
            session_id = _session(client)
            conversation_id = _conversation(client, session_id)

            response = client.post(
                f"/conversations/{conversation_id}/messages",
                data={"content": "Please store this"},
                files={"attachment": ("notes.txt", b"Lunch at 12", "text/plain")},
                headers={SESSION_HEADER: session_id},
            )

        assert response.status_code == 200
        assert [r["responder"] for r in response.json()["responses"]] == ["document_store"]
        counts = services.limiter.ledger.get_count(UsageEvent.FILE_UPLOAD, session_id)
        assert counts.session == 1

    def test_log(self, client):
        session_id = _session(client)
        conversation_id = _conversation(client, session_id)
        client.post(
            f"/conversations/{conversation_id}/messages",
            json={"content": "Hello"},
            headers={SESSION_HEADER: session_id},
        )

        response = client.get(f"/conversations/{conversation_id}/log?limit=2", headers={SESSION_HEADER: session_id})

        assert response.status_code == 200
        events = [e["event"] for e in response.json()["entries"]]
        assert events == ["planner_plan", "specialist_response"]

    def test_log_limit_validated(self, client):
        session_id = _session(client)
        conversation_id = _conversation(client, session_id)

        response = client.get(f"/conversations/{conversation_id}/log?limit=0", headers={SESSION_HEADER: session_id})

        assert response.status_code == 422

    def test_upstream_failure_is_stable_502(self, make_services, make_orchestrator):
        failing = FakeSpecialist("greeting", error=UpstreamFailure(
            "provider said: invalid key sk-secret",
            category="upstream.auth_failed",
        ))
        services = make_services(orchestrator=make_orchestrator(
            planner=FakePlanner(),
            specialists=[failing],
        ))
        with TestClient(create_app(services)) as client:
            session_id = _session(client)
            conversation_id = _conversation(client, session_id)

            response = client.post(
                f"/conversations/{conversation_id}/messages",
                json={"content": "Hello"},
                headers={SESSION_HEADER: session_id},
            )
            messages = client.get(f"/conversations/{conversation_id}/messages", headers={SESSION_HEADER: session_id})

        assert response.status_code == 502
        assert response.json() == {
            "error": "The assistant is not available right now.",
            "code": "upstream_failure",
            "category": "upstream.auth_failed",
        }
        assert "sk-secret" not in response.text
        assert len(messages.json()["messages"]) == 1


class TestQuotas:

    def test_message_quota(self, make_services):
        services = make_services(usage=_limited(message=1))
        with TestClient(create_app(services)) as client:
            session_id = _session(client)
            conversation_id = _conversation(client, session_id)
            url = f"/conversations/{conversation_id}/messages"

            first = client.post(url, json={"content": "one"}, headers={SESSION_HEADER: session_id})
            second = client.post(url, json={"content": "two"}, headers={SESSION_HEADER: session_id})
            third = client.post(url, json={"content": "three"}, headers={SESSION_HEADER: session_id})

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json() == {
            "error": "Daily messages limit reached for this session. Please try again tomorrow.",
            "code": "quota_exceeded",
            "event": "message",
            "scope": "session",
        }
        assert third.status_code == 429
        assert services.limiter.ledger.get_count(UsageEvent.MESSAGE, session_id).session == 1

        blocks = services.event_store.query(conversation_id, event_type="guardrail")
        assert [b["payload"]["reason"] for b in blocks] == ["usage_limit", "usage_limit"]

    def test_upload_quota(self, make_services):
        services = make_services(usage=_limited(file_upload=0))
        with TestClient(create_app(services)) as client:
            session_id = _session(client)
            conversation_id = _conversation(client, session_id)

            response = client.post(
                f"/conversations/{conversation_id}/messages",
                data={"content": "store"},
                files={"attachment": ("notes.txt", b"text", "text/plain")},
                headers={SESSION_HEADER: session_id},
            )

        assert response.status_code == 429
        assert response.json()["event"] == "file_upload"
        assert services.limiter.ledger.get_count(UsageEvent.FILE_UPLOAD, session_id).session == 0


class TestVoice:

    def test_create_voice_session(self, client):
        session_id = _session(client)
        conversation_id = _conversation(client, session_id)

        response = client.post(
            "/voice/sessions",
            json={"conversationId": conversation_id},
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 201
        grant = response.json()["grant"]
        assert grant["conversationId"] == conversation_id
        assert grant["clientSecret"] == "secret-value"

    def test_voice_session_quota(self, make_services):
        services = make_services(usage=_limited(voice_session=1))
        with TestClient(create_app(services)) as client:
            session_id = _session(client)
            conversation_id = _conversation(client, session_id)
            body = {"conversationId": conversation_id}

            first = client.post("/voice/sessions", json=body, headers={SESSION_HEADER: session_id})
            second = client.post("/voice/sessions", json=body, headers={SESSION_HEADER: session_id})

        assert first.status_code == 201
        assert second.status_code == 429
        assert second.json()["event"] == "voice_session"

    def test_missing_conversation_id(self, client):
        response = client.post("/voice/sessions", json={})

        assert response.status_code == 422

    def test_live_mode_disabled(self, client):
        session_id = _session(client)
        conversation_id = _conversation(client, session_id)

        response = client.post(
            "/voice/session",
            json={"conversationId": conversation_id},
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 404

    def test_live_offer_flow(self, make_services):
        services = make_services(live_mode=True)
        with TestClient(create_app(services)) as client:
            session_id = _session(client)
            conversation_id = _conversation(client, session_id)
            headers = {SESSION_HEADER: session_id}

            created = client.post("/voice/session", json={"conversationId": conversation_id}, headers=headers)
            answer = client.post(
                "/voice/offer",
                json={"conversationId": conversation_id, "sdp": "v=0 offer"},
                headers=headers,
            )
            stopped = client.delete(f"/voice/sessions/{conversation_id}", headers=headers)

        assert created.status_code == 201
        assert created.json()["status"] == "ready"
        assert answer.status_code == 200
        assert answer.json()["type"] == "answer"
        assert answer.json()["sdp"] == "v=0 answer"
        assert stopped.status_code == 200

    def test_offer_without_session(self, make_services):
        services = make_services(live_mode=True)
        with TestClient(create_app(services)) as client:
            session_id = _session(client)
            conversation_id = _conversation(client, session_id)

            response = client.post(
                "/voice/offer",
                json={"conversationId": conversation_id, "sdp": "v=0 offer"},
                headers={SESSION_HEADER: session_id},
            )

        assert response.status_code == 404

    def test_connection_state(self, client):
        session_id = _session(client)
        conversation_id = _conversation(client, session_id)
        headers = {SESSION_HEADER: session_id}
        client.post("/voice/sessions", json={"conversationId": conversation_id}, headers=headers)

        response = client.post(
            "/voice/connection-state",
            json={"conversationId": conversation_id, "state": "closed"},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json() == {"conversationId": conversation_id, "state": "closed", "closed": True}

    def test_stop_unknown_voice_session(self, client):
        session_id = _session(client)
        conversation_id = _conversation(client, session_id)

        response = client.delete(f"/voice/sessions/{conversation_id}", headers={SESSION_HEADER: session_id})

        assert response.json() == {"conversationId": conversation_id, "closed": False}
