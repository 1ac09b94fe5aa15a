"""
Connection to the realtime dialogue service.

One UpstreamLink per connection attempt: connect() opens the WebSocket,
waits for session.created and declares instructions plus the tool
catalog. There is no automatic reconnect; when the socket fails the
owning session discards the link and builds a new one on the next
start_recording.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import aiohttp

from logging_setup import get_logger, Component as LogComponent
from .config import RelayConfig
from .errors import ProtocolError, UpstreamConnectionError
from .upstream_events import (
    ProtocolErrorEvent,
    UpstreamErrorEvent,
    UpstreamEvent,
    decode_event,
    parse_message,
)


RESPONSE_MODALITIES = ["text", "audio"]


class UpstreamLink:
    """Realtime WebSocket adapter: intents out, typed events in."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        session_id: Optional[str] = None,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
    ):
        self.config = config
        self._session_factory = session_factory
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._send_lock = asyncio.Lock()
        self._closed = False
        logger = get_logger(LogComponent.UPSTREAM_LINK)
        self.logger = logger.with_session(session_id) if session_id else logger

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    @property
    def url(self) -> str:
        return f"{self.config.realtime_url}?model={self.config.realtime_model}"

    async def connect(self, instructions: str, tools: List[Dict[str, Any]]) -> None:
        """
        Open the socket and initialise the realtime session.

        No-op when already connected. Raises UpstreamConnectionError on
        handshake/auth failure or if session.created does not arrive in time.
        """
        if self.connected:
            return
        if self._closed:
            raise UpstreamConnectionError("link already closed")

        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        self._http = self._session_factory()
        try:
            self._ws = await self._http.ws_connect(self.url, headers=headers, heartbeat=30)
            await asyncio.wait_for(
                self._await_session_created(),
                timeout=self.config.upstream_ready_timeout_seconds,
            )
            self.logger.info("Realtime session ready", model=self.config.realtime_model)
            await self.update_session(instructions=instructions, tools=tools, full=True)
        except asyncio.TimeoutError as e:
            await self.close()
            raise UpstreamConnectionError("timed out waiting for realtime session") from e
        except aiohttp.WSServerHandshakeError as e:
            await self.close()
            if e.status in (401, 403):
                raise UpstreamConnectionError(f"unauthorized ({e.status})") from e
            raise UpstreamConnectionError(f"handshake failed ({e.status})") from e
        except aiohttp.ClientError as e:
            await self.close()
            raise UpstreamConnectionError(f"connection failed: {e}") from e
        except UpstreamConnectionError:
            await self.close()
            raise

    async def _await_session_created(self) -> None:
        assert self._ws is not None
        async for msg in self._ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                if msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
                continue
            try:
                message = parse_message(msg.data)
            except ProtocolError as e:
                self.logger.warning("Ignoring malformed frame during handshake", error=str(e))
                continue
            if message["type"] == "session.created":
                return
            if message["type"] == "error":
                error = message.get("error") or {}
                detail = error.get("message") if isinstance(error, dict) else str(error)
                raise UpstreamConnectionError(detail or "realtime service refused the session")
        raise UpstreamConnectionError("connection closed before session was ready")

    async def send(self, payload: Dict[str, Any]) -> None:
        """Send one wire message. Safe to call from either read loop."""
        async with self._send_lock:
            if not self.connected:
                raise UpstreamConnectionError("upstream link is not connected")
            try:
                await self._ws.send_str(json.dumps(payload))
            except (ConnectionResetError, aiohttp.ClientError) as e:
                raise UpstreamConnectionError(f"send failed: {e}") from e

    async def update_session(
        self,
        instructions: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        full: bool = False,
    ) -> None:
        session: Dict[str, Any] = {}
        if full:
            session.update({
                "model": self.config.realtime_model,
                "voice": self.config.realtime_voice,
                "input_audio_format": "pcm16",
                "output_audio_format": "pcm16",
                "input_audio_transcription": {"model": self.config.transcription_model},
            })
        if instructions is not None:
            session["instructions"] = instructions
        if tools is not None:
            session["tools"] = tools
        await self.send({"type": "session.update", "session": session})

    async def append_audio(self, audio_b64: str) -> None:
        await self.send({"type": "input_audio_buffer.append", "audio": audio_b64})

    async def commit_audio(self) -> None:
        await self.send({"type": "input_audio_buffer.commit"})

    async def request_response(self) -> None:
        await self.send({"type": "response.create", "response": {"modalities": RESPONSE_MODALITIES}})

    async def send_function_output(self, call_id: str, output: str) -> None:
        await self.send({
            "type": "conversation.item.create",
            "item": {
                "type": "function_call_output",
                "call_id": call_id,
                "output": output,
            },
        })

    async def events(self) -> AsyncIterator[UpstreamEvent]:
        """
        Yield typed events until the socket closes.

        Malformed frames are logged and surface as a ProtocolErrorEvent;
        a socket error raises UpstreamConnectionError.
        """
        if self._ws is None:
            raise UpstreamConnectionError("upstream link is not connected")
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    yield decode_event(parse_message(msg.data))
                except ProtocolError as e:
                    self.logger.warning("Malformed upstream message", error=str(e))
                    yield ProtocolErrorEvent(detail=str(e))
            elif msg.type == aiohttp.WSMsgType.ERROR:
                raise UpstreamConnectionError(f"socket error: {self._ws.exception()}")
            elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                break
        if not self._closed:
            self.logger.warning("Realtime connection closed by peer")

    async def close(self) -> None:
        """Release the socket and HTTP session. Idempotent."""
        self._closed = True
        ws, self._ws = self._ws, None
        http, self._http = self._http, None
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except Exception as e:
                self.logger.warning("Error closing realtime socket", error=str(e))
        if http is not None and not http.closed:
            await http.close()


def describe_error_event(event: UpstreamErrorEvent) -> str:
    return event.message if not event.code else f"{event.message} ({event.code})"
