"""
Voice relay server.

- GET  /health           liveness
- WS   /ws?chat_id=...   one voice session per connection
- GET  /relay/...        read API (see api.py)

create_app() takes optional collaborators so tests (and embedders) can
run the relay without a tool service or realtime credentials.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket

from logging_setup import get_logger, Component
from observability.events import Component as ObsComponent, EventEmitter
from .api import router as relay_router
from .client_link import ClientLink
from .collaborators import HttpProjectManager, ProjectManager, TranscriptStore
from .config import RelayConfig, get_config
from .dispatcher import FunctionDispatcher
from .session import SessionManager, SessionPolicy, UpstreamFactory, VoiceSession
from .upstream import UpstreamLink


logger = get_logger(Component.RELAY_SERVER)
emitter = EventEmitter(ObsComponent.RELAY_SERVER)


def create_app(
    config: Optional[RelayConfig] = None,
    *,
    project_manager: Optional[ProjectManager] = None,
    upstream_factory: Optional[UpstreamFactory] = None,
    transcript_store: Optional[TranscriptStore] = None,
    policy: Optional[SessionPolicy] = None,
) -> FastAPI:
    """Build the relay application. Missing pieces are resolved from config at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down relay", sessions=len(app.state.sessions))
        await app.state.sessions.close_all()

    app = FastAPI(title="Voice Relay", lifespan=lifespan)
    app.state.sessions = SessionManager()
    app.include_router(relay_router)

    def resolve_config() -> RelayConfig:
        return config or get_config()

    def resolve_project_manager() -> ProjectManager:
        if project_manager is not None:
            return project_manager
        cfg = resolve_config()
        if not cfg.tools_service_url:
            raise RuntimeError("TOOLS_SERVICE_URL is required when no project manager is supplied")
        return HttpProjectManager(cfg.tools_service_url)

    def resolve_upstream_factory() -> UpstreamFactory:
        if upstream_factory is not None:
            return upstream_factory
        cfg = resolve_config()

        def factory(session_id: str) -> UpstreamLink:
            return UpstreamLink(cfg, session_id=session_id)

        return factory

    def resolve_policy() -> SessionPolicy:
        if policy is not None:
            return policy
        return SessionPolicy.from_config(resolve_config())

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "component": "voice_relay"}

    @app.websocket("/ws")
    async def voice_socket(websocket: WebSocket):
        await websocket.accept()
        chat_id = websocket.query_params.get("chat_id") or None
        session_id = str(uuid.uuid4())
        client = ClientLink(websocket, session_id=session_id)

        try:
            session = VoiceSession(
                client,
                FunctionDispatcher(resolve_project_manager()),
                resolve_upstream_factory(),
                session_id=session_id,
                chat_id=chat_id,
                transcript_store=transcript_store,
                policy=resolve_policy(),
            )
        except (KeyError, RuntimeError) as e:
            logger.error("Relay is not configured", error=str(e), error_type=type(e).__name__)
            await client.send_status("error", "Voice relay is not configured")
            await client.close(code=1011)
            return

        sessions: SessionManager = app.state.sessions
        sessions.register(session)
        emitter.emit("client.connected", session.id, chat_id=chat_id)
        logger.info("Client connected", session_id=session.id, chat_id=chat_id)
        try:
            await session.run()
        finally:
            sessions.remove(session.id)
            logger.info("Client disconnected", session_id=session.id)

    return app


app = create_app()
