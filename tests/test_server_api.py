"""
Tests for the relay server.

Verifies:
- GET /health
- WS /ws voice sessions against fake collaborators
- GET /relay/sessions (list with filters)
- GET /relay/sessions/{session_id} (session details)
- GET /relay/sessions/{session_id}/events (query relay events)
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import relay.config as relay_config
from observability.event_store import event_store
from relay.server import create_app
from relay.session import SessionPolicy
from tests.fakes import FakeProjectManager, FakeUpstream


@pytest.fixture
def app():
    return create_app(
        project_manager=FakeProjectManager(),
        upstream_factory=lambda session_id: FakeUpstream(),
        policy=SessionPolicy(snapshot_interval_seconds=0),
    )


@pytest.fixture
def client(app):
    """FastAPI test client."""
    return TestClient(app)


@pytest.fixture(autouse=True)
def cleanup():
    """Clean up events between tests."""
    yield
    event_store.clear()


def _receive_until(ws, event_type, limit=20):
    for _ in range(limit):
        message = ws.receive_json()
        if message["type"] == event_type:
            return message
    raise AssertionError(f"no {event_type} event received")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "component": "voice_relay"}


def test_list_sessions_empty(client):
    response = client.get("/relay/sessions")
    assert response.status_code == 200
    assert response.json() == []


def test_list_sessions_invalid_state(client):
    response = client.get("/relay/sessions?state=dancing")
    assert response.status_code == 400
    assert "Invalid state" in response.json()["detail"]


def test_get_session_not_found(client):
    response = client.get("/relay/sessions/nonexistent")
    assert response.status_code == 404
    assert response.json()["detail"] == "Session not found"


def test_get_events_session_not_found(client):
    response = client.get("/relay/sessions/nonexistent/events")
    assert response.status_code == 404


def test_websocket_session_lifecycle(client):
    with client.websocket_connect("/ws?chat_id=chat-42") as ws:
        greeting = ws.receive_json()
        assert greeting == {
            "type": "status",
            "data": {"status": "connected", "message": "Voice session started. Press record to begin."},
        }

        ws.send_json({"type": "select_project", "data": {"project": "demo-repo"}})
        selected = _receive_until(ws, "status")
        assert selected["data"]["status"] == "project_selected"

        sessions = client.get("/relay/sessions").json()
        assert len(sessions) == 1
        session_id = sessions[0]["session_id"]
        assert sessions[0]["current_project"] == "demo-repo"
        assert sessions[0]["state"] == "idle"

        detail = client.get(f"/relay/sessions/{session_id}").json()
        assert detail["chat_id"] == "chat-42"
        assert detail["upstream_connected"] is False
        assert detail["policy"]["rollback_window_seconds"] == 5.0

        events = client.get(f"/relay/sessions/{session_id}/events?event_type=session.created").json()
        assert events["count"] == 1
        assert events["events"][0]["component"] == "voice_session"

        bad = client.get(f"/relay/sessions/{session_id}/events?since=yesterday")
        assert bad.status_code == 400

    assert client.get("/relay/sessions").json() == []


def test_websocket_recording_and_test_function(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()

        ws.send_json({"type": "start_recording"})
        recording = _receive_until(ws, "status")
        assert recording["data"]["status"] == "connecting"
        recording = _receive_until(ws, "status")
        assert recording["data"]["status"] == "recording"

        ws.send_json({
            "type": "test_function",
            "data": {"project": "demo-repo", "function": "list_issues", "args": {"state": "open"}},
        })
        result = _receive_until(ws, "function_result")
        assert result["data"]["function"] == "list_issues"
        assert result["data"]["success"] is True


def test_websocket_rejects_unknown_intent(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()

        ws.send_text('{"type": "teleport"}')
        error = _receive_until(ws, "status")

        assert error["data"]["status"] == "error"
        assert error["data"]["message"].startswith("Invalid message")


def test_websocket_without_configuration(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setattr(relay_config, "_config", None)
    monkeypatch.setattr(relay_config, "load_local_env", lambda: None)
    client = TestClient(create_app())

    with client.websocket_connect("/ws") as ws:
        error = ws.receive_json()
        assert error["data"] == {"status": "error", "message": "Voice relay is not configured"}
        with pytest.raises(WebSocketDisconnect):
            ws.receive_json()
