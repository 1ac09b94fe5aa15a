"""
Client-facing WebSocket adapter.

Inbound frames are JSON {"type": ..., "data": ...} or raw binary audio.
Outbound events use the same envelope. Audio is passed through as
opaque base64; no resampling or format checks happen here.
"""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError
from starlette.websockets import WebSocketState

from logging_setup import get_logger, Component as LogComponent
from .errors import ProtocolError


class IntentType(str, Enum):
    AUDIO = "audio"
    START_RECORDING = "start_recording"
    STOP_RECORDING = "stop_recording"
    SELECT_PROJECT = "select_project"
    TEST_FUNCTION = "test_function"
    INTERRUPT_PROCESSING = "interrupt_processing"
    # Internal marker for frames that could not be parsed
    INVALID = "invalid"


class AudioPayload(BaseModel):
    audio_data: str = Field(..., min_length=1)


class SelectProjectPayload(BaseModel):
    project: str = Field(..., min_length=1)


class TestFunctionPayload(BaseModel):
    __test__ = False  # not a pytest class

    project: Optional[str] = None
    function: str = Field(..., min_length=1)
    args: Dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class ClientIntent:
    type: IntentType
    audio_b64: Optional[str] = None
    project: Optional[str] = None
    function: Optional[str] = None
    args: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def parse_intent(message: Any) -> ClientIntent:
    """Validate one decoded JSON frame. Raises ProtocolError on anything outside the vocabulary."""
    if not isinstance(message, dict):
        raise ProtocolError("client frame is not an object")
    raw_type = message.get("type")
    try:
        intent_type = IntentType(raw_type)
    except ValueError:
        raise ProtocolError(f"unknown client intent: {raw_type!r}")
    if intent_type is IntentType.INVALID:
        raise ProtocolError("unknown client intent: 'invalid'")

    data = message.get("data")
    try:
        if intent_type is IntentType.AUDIO:
            if isinstance(data, str):
                data = {"audio_data": data}
            payload = AudioPayload.model_validate(data)
            return ClientIntent(type=intent_type, audio_b64=payload.audio_data)

        if intent_type is IntentType.SELECT_PROJECT:
            if isinstance(data, str):
                data = {"project": data}
            payload = SelectProjectPayload.model_validate(data)
            return ClientIntent(type=intent_type, project=payload.project)

        if intent_type is IntentType.TEST_FUNCTION:
            payload = TestFunctionPayload.model_validate(data)
            return ClientIntent(
                type=intent_type,
                project=payload.project,
                function=payload.function,
                args=payload.args,
            )
    except ValidationError as e:
        raise ProtocolError(f"invalid {intent_type.value} payload: {e.error_count()} error(s)") from e

    return ClientIntent(type=intent_type)


class ClientLink:
    """One connected client."""

    def __init__(self, websocket: WebSocket, session_id: Optional[str] = None):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False
        logger = get_logger(LogComponent.CLIENT_LINK)
        self.logger = logger.with_session(session_id) if session_id else logger

    @property
    def closed(self) -> bool:
        return self._closed

    async def intents(self) -> AsyncIterator[ClientIntent]:
        """Yield intents until the client disconnects."""
        while not self._closed:
            try:
                message = await self.websocket.receive()
            except (WebSocketDisconnect, RuntimeError):
                break
            if message.get("type") == "websocket.disconnect":
                break

            raw_bytes = message.get("bytes")
            if raw_bytes is not None:
                yield ClientIntent(
                    type=IntentType.AUDIO,
                    audio_b64=base64.b64encode(raw_bytes).decode("ascii"),
                )
                continue

            text = message.get("text")
            try:
                yield parse_intent(json.loads(text or ""))
            except (json.JSONDecodeError, ProtocolError) as e:
                self.logger.warning("Rejected client frame", error=str(e))
                yield ClientIntent(type=IntentType.INVALID, error=str(e))
        self._closed = True

    async def send(self, event_type: str, data: Dict[str, Any]) -> bool:
        """Send one event. Returns False if the client is gone."""
        async with self._send_lock:
            if self._closed:
                return False
            try:
                await self.websocket.send_json({"type": event_type, "data": data})
                return True
            except (WebSocketDisconnect, RuntimeError) as e:
                self._closed = True
                self.logger.warning("Failed to send client event", event_type=event_type, error=str(e))
                return False

    async def send_status(self, status: str, message: str, project: Optional[str] = None) -> bool:
        data: Dict[str, Any] = {"status": status, "message": message}
        if project is not None:
            data["project"] = project
        return await self.send("status", data)

    async def send_transcription(self, text: str) -> bool:
        return await self.send("transcription", {"text": text})

    async def send_audio(self, audio_b64: str) -> bool:
        return await self.send("audio_response", {"audio_data": audio_b64})

    async def send_function_result(self, function: str, result: Any, success: Optional[bool] = None) -> bool:
        data: Dict[str, Any] = {"function": function, "result": result}
        if success is not None:
            data["success"] = success
        return await self.send("function_result", data)

    async def send_advice(self, question: str, advice: Any, repository: Optional[str]) -> bool:
        return await self.send("advice", {"question": question, "advice": advice, "repository": repository})

    async def send_streaming_text(self, content: str, timestamp: str) -> bool:
        return await self.send("assistant_streaming_text", {"content": content, "timestamp": timestamp})

    async def send_todos(self, todos: Any, timestamp: str) -> bool:
        return await self.send("assistant_todos", {"todos": todos, "timestamp": timestamp})

    async def close(self, code: int = 1000) -> None:
        """Close the socket if still open. Idempotent."""
        async with self._send_lock:
            already_closed = self._closed
            self._closed = True
        if already_closed:
            return
        if getattr(self.websocket, "application_state", None) == WebSocketState.CONNECTED:
            try:
                await self.websocket.close(code=code)
            except RuntimeError as e:
                self.logger.debug("Client socket already closed", error=str(e))
