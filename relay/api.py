"""
Relay read API.

Lists live sessions, returns session details and queries the relay
events recorded for a session. The session table is owned by the
application (app.state.sessions).
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from observability.event_store import event_store
from .session import SessionManager, SessionState


router = APIRouter(prefix="/relay", tags=["relay"])


class SessionSummary(BaseModel):
    """Session summary for list endpoint."""
    session_id: str
    state: str
    current_project: Optional[str] = None
    created_at: str
    last_activity: str


class SessionDetail(BaseModel):
    """Full session details."""
    session_id: str
    state: str
    chat_id: Optional[str] = None
    current_project: Optional[str] = None
    created_at: str
    last_activity: str
    upstream_connected: bool = False
    processed_calls: int = 0
    processing: bool = False
    streaming_log_length: int = 0
    policy: dict = Field(default_factory=dict)


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.sessions


def _parse_timestamp(name: str, value: str) -> datetime:
    # A literal "+" in the query string arrives as a space
    clean = value.replace(" ", "+").replace("Z", "+00:00")
    if "+" not in clean and "-" not in clean[-6:]:
        clean += "+00:00"
    try:
        return datetime.fromisoformat(clean)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")


@router.get("/sessions", response_model=List[SessionSummary])
async def list_sessions(
    request: Request,
    state: Optional[str] = Query(None, description="Filter by state (idle, recording, executing, etc.)"),
) -> List[SessionSummary]:
    state_filter: Optional[SessionState] = None
    if state:
        try:
            state_filter = SessionState(state.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid state: {state}")

    sessions = get_session_manager(request).list_sessions(state=state_filter)
    return [
        SessionSummary(
            session_id=s.id,
            state=s.state.value,
            current_project=s.current_project,
            created_at=s.created_at.isoformat(),
            last_activity=s.last_activity.isoformat(),
        )
        for s in sessions
    ]


@router.get("/sessions/{session_id}", response_model=SessionDetail)
async def get_session(request: Request, session_id: str) -> SessionDetail:
    session = get_session_manager(request).get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")

    return SessionDetail(
        session_id=session.id,
        state=session.state.value,
        chat_id=session.chat_id,
        current_project=session.current_project,
        created_at=session.created_at.isoformat(),
        last_activity=session.last_activity.isoformat(),
        upstream_connected=session.upstream is not None and session.upstream.connected,
        processed_calls=len(session.processed_call_ids),
        processing=session.processing_marker is not None,
        streaming_log_length=len(session.streaming_log),
        policy={
            "rollback_window_seconds": session.policy.rollback_window_seconds,
            "content_dedup_window_seconds": session.policy.content_dedup_window_seconds,
            "max_processed_call_ids": session.policy.max_processed_call_ids,
        },
    )


@router.get("/sessions/{session_id}/events")
async def get_session_events(
    request: Request,
    session_id: str,
    event_type: Optional[str] = Query(None, description="Filter by event_type"),
    component: Optional[str] = Query(None, description="Filter by component"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    until: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
) -> dict:
    if not get_session_manager(request).get_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")

    events = event_store.query(
        session_id=session_id,
        event_type=event_type,
        component=component,
        since=_parse_timestamp("since", since) if since else None,
        until=_parse_timestamp("until", until) if until else None,
        limit=limit,
    )

    return {
        "session_id": session_id,
        "events": events,
        "count": len(events),
    }
