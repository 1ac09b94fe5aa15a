"""
Typed events decoded from the realtime service stream.

The wire format is an open-ended set of JSON messages keyed by "type".
decode_event() maps it onto a closed set of frozen dataclasses; anything
not recognised becomes Unhandled so new server event types never break
a session.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from .dispatcher import FunctionCall
from .errors import ProtocolError


@dataclass(frozen=True)
class SessionReady:
    """session.created / session.updated"""

    created: bool


@dataclass(frozen=True)
class AudioDelta:
    audio: str  # base64 PCM16


@dataclass(frozen=True)
class TranscriptDelta:
    delta: str
    source: str  # "assistant" | "user"


@dataclass(frozen=True)
class TranscriptDone:
    transcript: str
    source: str


@dataclass(frozen=True)
class SpeechStarted:
    pass


@dataclass(frozen=True)
class SpeechStopped:
    pass


@dataclass(frozen=True)
class FunctionCallArgumentsDone:
    call: FunctionCall


@dataclass(frozen=True)
class ResponseDone:
    status: Optional[str] = None


@dataclass(frozen=True)
class UpstreamErrorEvent:
    message: str
    code: Optional[str] = None
    error_type: Optional[str] = None


@dataclass(frozen=True)
class Lifecycle:
    """Known informational events that need no routing."""

    type: str


@dataclass(frozen=True)
class ProtocolErrorEvent:
    """A frame that could not be decoded; never produced by decode_event."""

    detail: str


@dataclass(frozen=True)
class Unhandled:
    type: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


UpstreamEvent = Union[
    SessionReady,
    AudioDelta,
    TranscriptDelta,
    TranscriptDone,
    SpeechStarted,
    SpeechStopped,
    FunctionCallArgumentsDone,
    ResponseDone,
    UpstreamErrorEvent,
    Lifecycle,
    ProtocolErrorEvent,
    Unhandled,
]


LIFECYCLE_TYPES = frozenset({
    "conversation.item.created",
    "input_audio_buffer.committed",
    "input_audio_buffer.cleared",
    "response.created",
    "response.output_item.added",
    "response.output_item.done",
    "response.content_part.added",
    "response.content_part.done",
    "response.audio.done",
    "response.text.delta",
    "response.text.done",
    "response.function_call_arguments.delta",
    "rate_limits.updated",
})


def parse_message(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Parse one wire frame. Raises ProtocolError if it is not a JSON object with a type."""
    try:
        message = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"undecodable upstream frame: {e}") from e
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise ProtocolError("upstream frame without a type")
    return message


def decode_event(message: Dict[str, Any]) -> UpstreamEvent:
    """Map one parsed upstream message to its typed event."""
    event_type = message.get("type")
    if not isinstance(event_type, str):
        raise ProtocolError("upstream frame without a type")

    if event_type in ("session.created", "session.updated"):
        return SessionReady(created=event_type == "session.created")

    if event_type == "response.audio.delta":
        return AudioDelta(audio=message.get("delta") or "")

    if event_type == "response.audio_transcript.delta":
        return TranscriptDelta(delta=message.get("delta") or "", source="assistant")

    if event_type == "response.audio_transcript.done":
        return TranscriptDone(transcript=message.get("transcript") or "", source="assistant")

    if event_type == "conversation.item.input_audio_transcription.completed":
        return TranscriptDone(transcript=message.get("transcript") or "", source="user")

    if event_type == "input_audio_buffer.speech_started":
        return SpeechStarted()

    if event_type == "input_audio_buffer.speech_stopped":
        return SpeechStopped()

    if event_type == "response.function_call_arguments.done":
        return FunctionCallArgumentsDone(call=FunctionCall.from_wire(
            message.get("call_id"),
            message.get("name"),
            message.get("arguments"),
        ))

    if event_type == "response.done":
        response = message.get("response") or {}
        return ResponseDone(status=response.get("status") if isinstance(response, dict) else None)

    if event_type == "error":
        error = message.get("error") or {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        return UpstreamErrorEvent(
            message=error.get("message") or "Upstream error",
            code=error.get("code"),
            error_type=error.get("type"),
        )

    if event_type in LIFECYCLE_TYPES:
        return Lifecycle(type=event_type)

    return Unhandled(type=event_type, raw=message)
