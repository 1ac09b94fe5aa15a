"""
Relay event emission and in-memory event store tests.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest

from observability.event_store import EventStore, event_store
from observability.events import Component, EventEmitter, Severity


@pytest.fixture(autouse=True)
def cleanup():
    yield
    event_store.clear()


class TestEventFormat:
    """Envelope written to stdout."""

    def test_required_fields(self, capsys):
        emitter = EventEmitter(Component.VOICE_SESSION)
        emitter.emit("test.event", "sess-123", severity=Severity.INFO)

        event = json.loads(capsys.readouterr().out.strip())

        assert event["session_id"] == "sess-123"
        assert event["component"] == "voice_session"
        assert event["event_type"] == "test.event"
        assert event["severity"] == "info"
        assert event["correlation_id"] == "sess-123"
        datetime.fromisoformat(event["ts"].replace("Z", "+00:00"))

    def test_correlation_id_override_and_payload(self, capsys):
        emitter = EventEmitter(Component.FUNCTION_DISPATCHER)
        emitter.function_call_dispatched("sess-1", "call_9", "list_issues", "standard")

        event = json.loads(capsys.readouterr().out.strip())

        assert event["event_type"] == "function_call.dispatched"
        assert event["correlation_id"] == "call_9"
        assert event["function"] == "list_issues"
        assert event["category"] == "standard"

    def test_failed_completion_is_warn(self, capsys):
        emitter = EventEmitter(Component.VOICE_SESSION)
        emitter.function_call_completed("sess-1", "call_1", "git_commit", success=False, latency_ms=12)

        event = json.loads(capsys.readouterr().out.strip())

        assert event["severity"] == "warn"
        assert event["success"] is False

    def test_emitted_events_are_stored(self, capsys):
        emitter = EventEmitter(Component.VOICE_SESSION)
        emitter.session_state_changed("sess-2", "idle", "connecting")

        events = event_store.query(session_id="sess-2")

        assert len(events) == 1
        assert events[0]["from_state"] == "idle"
        assert events[0]["to_state"] == "connecting"


class TestEventStore:
    def _event(self, session_id, event_type, ts):
        return {
            "ts": ts.isoformat(),
            "session_id": session_id,
            "component": "voice_session",
            "event_type": event_type,
            "severity": "info",
            "correlation_id": session_id,
        }

    def test_query_filters(self):
        store = EventStore()
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        store.store(self._event("a", "session.created", base))
        store.store(self._event("a", "session.state_changed", base + timedelta(seconds=1)))
        store.store(self._event("b", "session.created", base + timedelta(seconds=2)))

        assert len(store.query(session_id="a")) == 2
        assert len(store.query(event_type="session.created")) == 2
        assert len(store.query(since=base + timedelta(seconds=1))) == 2
        assert len(store.query(until=base)) == 1
        assert len(store.query(limit=1)) == 1

    def test_bounded(self):
        store = EventStore(max_events=2)
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(3):
            store.store(self._event("a", f"e{i}", base + timedelta(seconds=i)))

        types = [e["event_type"] for e in store.query()]
        assert types == ["e1", "e2"]
