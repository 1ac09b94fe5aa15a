"""
Structured JSON relay events.

One event per line on stdout (for log aggregation), mirrored into the
in-memory event store for the session read API.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event-producing components."""

    RELAY_SERVER = "relay_server"
    VOICE_SESSION = "voice_session"
    UPSTREAM_LINK = "upstream_link"
    FUNCTION_DISPATCHER = "function_dispatcher"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class EventEmitter:
    """Emits structured relay events."""

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """
        Emit one event and return the envelope that was written.

        Args:
            event_type: Stable event type string (e.g. "session.state_changed")
            session_id: Opaque session identifier
            severity: Event severity level
            correlation_id: Call id or other correlation key (defaults to session_id)
            **kwargs: Event-specific fields
        """
        event: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
        }
        event.update(kwargs)

        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)
        return event

    def session_state_changed(self, session_id: str, from_state: str, to_state: str) -> None:
        self.emit(
            "session.state_changed",
            session_id,
            from_state=from_state,
            to_state=to_state,
        )

    def function_call_dispatched(
        self,
        session_id: str,
        call_id: str,
        function: str,
        category: str,
    ) -> None:
        self.emit(
            "function_call.dispatched",
            session_id,
            correlation_id=call_id,
            function=function,
            category=category,
        )

    def function_call_completed(
        self,
        session_id: str,
        call_id: str,
        function: str,
        success: bool,
        latency_ms: int,
    ) -> None:
        self.emit(
            "function_call.completed",
            session_id,
            severity=Severity.INFO if success else Severity.WARN,
            correlation_id=call_id,
            function=function,
            success=success,
            latency_ms=latency_ms,
        )

    def duplicate_call_ignored(self, session_id: str, call_id: str, function: str, reason: str) -> None:
        self.emit(
            "function_call.duplicate_ignored",
            session_id,
            severity=Severity.DEBUG,
            correlation_id=call_id,
            function=function,
            reason=reason,
        )

    def session_interrupted(
        self,
        session_id: str,
        truncated_entries: int,
        discarded_artifacts: int,
    ) -> None:
        self.emit(
            "session.interrupted",
            session_id,
            truncated_entries=truncated_entries,
            discarded_artifacts=discarded_artifacts,
        )

    def upstream_error(self, session_id: str, category: str, detail: Optional[str] = None) -> None:
        self.emit(
            "upstream.error",
            session_id,
            severity=Severity.ERROR,
            category=category,
            detail=detail,
        )
