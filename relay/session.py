"""
Voice session: one client link paired with one realtime upstream link.

Two read loops run concurrently per session (client intents, upstream
events). Every read or write of session state (state, processed call
ids, processing marker, current project, conversation log) happens under
the session lock. Tool execution runs outside the lock: the project is
read under the lock, the lock released, the collaborator awaited, and
the lock re-acquired to record the outcome.

States: idle -> connecting -> recording -> processing -> executing,
plus error (recoverable via start_recording) and closed (terminal).
"""

from __future__ import annotations

import asyncio
import functools
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .client_link import ClientIntent, ClientLink, IntentType
from .collaborators import InterruptibleProjectManager, ProjectManager, TranscriptStore
from .config import RelayConfig
from .dispatcher import FunctionCall, FunctionDispatcher, Outcome
from .errors import ProjectSelectionError, UpstreamConnectionError, UpstreamErrorClassifier
from .instructions import get_instructions, get_project_instructions
from .tools import ToolCategory, ToolRegistry, tool_registry
from .upstream import UpstreamLink, describe_error_event
from .upstream_events import (
    AudioDelta,
    FunctionCallArgumentsDone,
    Lifecycle,
    ProtocolErrorEvent,
    ResponseDone,
    SessionReady,
    SpeechStarted,
    SpeechStopped,
    TranscriptDelta,
    TranscriptDone,
    Unhandled,
    UpstreamErrorEvent,
    UpstreamEvent,
)


INTERRUPTED_MARKER = "Interrupted by user"
CONTENT_DEDUP_RETENTION_SECONDS = 30.0


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    RECORDING = "recording"
    PROCESSING = "processing"
    EXECUTING = "executing"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionPolicy:
    """Per-session tunables."""

    rollback_window_seconds: float = 5.0
    content_dedup_window_seconds: float = 5.0
    max_processed_call_ids: Optional[int] = None
    snapshot_interval_seconds: float = 300.0
    prompt_name: str = "default"

    @classmethod
    def from_config(cls, config: RelayConfig) -> "SessionPolicy":
        return cls(
            rollback_window_seconds=config.rollback_window_seconds,
            content_dedup_window_seconds=config.content_dedup_window_seconds,
            max_processed_call_ids=config.max_processed_call_ids,
            snapshot_interval_seconds=config.snapshot_interval_seconds,
            prompt_name=config.prompt_name,
        )


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LogEntry:
    """One entry of the streaming-text log."""

    content: str
    timestamp: str
    synthetic: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"content": self.content, "timestamp": self.timestamp}
        if self.synthetic:
            data["synthetic"] = True
        return data


@dataclass
class Artifact:
    """Non-text output recorded during a turn (todo lists, function results)."""

    kind: str
    payload: Dict[str, Any]
    recorded_at: float
    advisory: bool = False


@dataclass
class ConversationState:
    transcriptions: List[Dict[str, Any]] = field(default_factory=list)
    streaming_texts: List[LogEntry] = field(default_factory=list)
    artifacts: List[Artifact] = field(default_factory=list)
    continuation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transcriptions": list(self.transcriptions),
            "functionResults": [a.payload for a in self.artifacts if a.kind == "function_result"],
            "streamingTexts": [e.to_dict() for e in self.streaming_texts],
            "todoWrites": [a.payload for a in self.artifacts if a.kind == "todos"],
            "continuationId": self.continuation_id,
        }


UpstreamFactory = Callable[[str], UpstreamLink]


class VoiceSession:
    """Relay between one client and the realtime service."""

    def __init__(
        self,
        client: ClientLink,
        dispatcher: FunctionDispatcher,
        upstream_factory: UpstreamFactory,
        *,
        session_id: Optional[str] = None,
        chat_id: Optional[str] = None,
        transcript_store: Optional[TranscriptStore] = None,
        policy: Optional[SessionPolicy] = None,
        registry: ToolRegistry = tool_registry,
        now: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.id = session_id or str(uuid.uuid4())
        self.client = client
        self.dispatcher = dispatcher
        self.registry = registry
        self.chat_id = chat_id
        self.transcript_store = transcript_store
        self.policy = policy or SessionPolicy()
        self._upstream_factory = upstream_factory
        self._now = now
        self._sleep = sleep

        self.state = SessionState.IDLE
        self.current_project: Optional[str] = None
        self.created_at = datetime.now(timezone.utc)
        self.last_activity = self.created_at
        self.processing_marker: Optional[int] = None
        # Bumped on every rollback; stream output tagged with an older turn is dropped
        self._turn = 0
        self.conversation = ConversationState()

        self.upstream: Optional[UpstreamLink] = None
        self._upstream_task: Optional[asyncio.Task] = None
        self._snapshot_task: Optional[asyncio.Task] = None
        self._dispatch_tasks: Set[asyncio.Task] = set()
        self._pending_calls = 0

        self._processed_calls: "OrderedDict[str, None]" = OrderedDict()
        self._recent_content: Dict[str, float] = {}
        self._assistant_transcript = ""

        self._lock = asyncio.Lock()
        self.emitter = EventEmitter(ObsComponent.VOICE_SESSION)
        self.logger = get_logger(LogComponent.VOICE_SESSION, session_id=self.id)

    # ------------------------------------------------------------------
    # Introspection

    @property
    def project_manager(self) -> ProjectManager:
        return self.dispatcher.project_manager

    @property
    def processed_call_ids(self) -> frozenset:
        return frozenset(self._processed_calls)

    @property
    def streaming_log(self) -> List[LogEntry]:
        return self.conversation.streaming_texts

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    # ------------------------------------------------------------------
    # Lifecycle

    async def run(self) -> None:
        """Serve the client until it disconnects, then tear down."""
        await self.start()
        try:
            async for intent in self.client.intents():
                if self.closed:
                    break
                await self.handle_intent(intent)
        finally:
            await self.close()

    async def start(self) -> None:
        self.emitter.emit("session.created", self.id, chat_id=self.chat_id)

        if self.chat_id and self.transcript_store is not None:
            try:
                data = await self.transcript_store.resume_session(self.chat_id)
                await self.client.send("session_resumed", {
                    "chatId": self.chat_id,
                    "chat": data.get("chat"),
                    "snapshot": data.get("snapshot"),
                    "messages": data.get("messages", []),
                })
            except Exception as e:
                self.logger.warning("Failed to resume chat", chat_id=self.chat_id, error=str(e))

            if self.policy.snapshot_interval_seconds > 0:
                self._snapshot_task = asyncio.create_task(self._snapshot_loop())

        await self.client.send_status("connected", "Voice session started. Press record to begin.")
        self.logger.info("Voice session started", chat_id=self.chat_id)

    async def close(self, reason: str = "client_disconnected") -> None:
        """Tear down both links. Safe to call more than once."""
        async with self._lock:
            if self.state is SessionState.CLOSED:
                return
            self._transition_locked(SessionState.CLOSED)
            upstream, self.upstream = self.upstream, None
            tasks = [t for t in (self._upstream_task, self._snapshot_task) if t is not None]
            tasks.extend(self._dispatch_tasks)
            self._upstream_task = None
            self._snapshot_task = None

        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if upstream is not None:
            await upstream.close()

        await self.create_snapshot()
        await self.client.close()
        self.emitter.emit("session.closed", self.id, reason=reason)
        self.logger.info("Voice session closed", reason=reason)

    # ------------------------------------------------------------------
    # Client intents

    async def handle_intent(self, intent: ClientIntent) -> None:
        async with self._lock:
            if self.closed:
                return
            self.last_activity = datetime.now(timezone.utc)

        if intent.type is IntentType.AUDIO:
            await self.append_audio(intent.audio_b64 or "")
        elif intent.type is IntentType.START_RECORDING:
            await self.start_recording()
        elif intent.type is IntentType.STOP_RECORDING:
            await self.stop_recording()
        elif intent.type is IntentType.SELECT_PROJECT:
            await self.select_project(intent.project or "")
        elif intent.type is IntentType.TEST_FUNCTION:
            self._spawn(self.invoke_function(intent.function or "", intent.args or {}, intent.project))
        elif intent.type is IntentType.INTERRUPT_PROCESSING:
            await self.interrupt()
        else:
            self.emitter.emit(
                "client.protocol_error",
                self.id,
                severity=Severity.WARN,
                detail=intent.error,
            )
            await self.client.send_status("error", f"Invalid message: {intent.error}", self.current_project)

    async def append_audio(self, audio_b64: str) -> None:
        async with self._lock:
            if self.closed:
                return
            upstream = self._connected_upstream_locked()

        if upstream is None:
            self.logger.debug("Realtime link not connected, ignoring audio")
            return
        try:
            await upstream.append_audio(audio_b64)
        except UpstreamConnectionError as e:
            await self._fail_upstream(upstream, e)

    async def start_recording(self) -> None:
        async with self._lock:
            if self.closed:
                return
            if self.state is SessionState.CONNECTING:
                self.logger.debug("start_recording while connecting, ignoring")
                return
            rollback = self._rollback_locked()
            self._transition_locked(SessionState.CONNECTING)
            upstream = self._connected_upstream_locked()
            project = self.current_project

        if rollback is not None:
            await self.client.send("processing_interrupted", rollback)
        await self.client.send_status("connecting", "Connecting to voice assistant...", project)

        if upstream is None:
            try:
                upstream = await self._connect_upstream(project)
            except UpstreamConnectionError as e:
                await self._fail_upstream(None, e)
                return
            if upstream is None:
                return

        async with self._lock:
            if self.closed:
                return
            if self.state is SessionState.CONNECTING:
                self._transition_locked(SessionState.RECORDING)
            project = self.current_project
        await self.client.send_status("recording", "Recording started - speak now", project)

    async def stop_recording(self) -> None:
        async with self._lock:
            if self.closed:
                return
            upstream = self._connected_upstream_locked()
            if upstream is not None and self.state in (SessionState.RECORDING, SessionState.IDLE, SessionState.ERROR):
                self._transition_locked(SessionState.PROCESSING)
            project = self.current_project

        if upstream is None:
            await self.client.send_status("error", "Voice assistant is not connected", project)
            return

        await self.client.send_status("processing", "Processing voice command...", project)
        try:
            await upstream.commit_audio()
            await upstream.request_response()
        except UpstreamConnectionError as e:
            await self._fail_upstream(upstream, e)

    async def select_project(self, name: str) -> Dict[str, Any]:
        """
        Rebind the current project after the collaborator accepts it.

        On failure current_project is left untouched.
        """
        if not name:
            await self.client.send_status("error", "Project name required", "")
            return {"success": False, "message": "Project name required"}

        try:
            await self.project_manager.select_project(name)
        except ProjectSelectionError as e:
            return await self._project_selection_failed(name, str(e))
        except Exception as e:
            self.logger.exception("Project collaborator raised", project=name)
            return await self._project_selection_failed(name, str(e))

        async with self._lock:
            if self.closed:
                return {"success": False, "message": "session closed"}
            self.current_project = name
            upstream = self._connected_upstream_locked()

        await self.client.send_status("project_selected", f"Selected repository: {name}", name)
        if upstream is not None:
            await self._refresh_project_context(upstream, name)
        return {"success": True, "message": f"Selected repository: {name}"}

    async def _project_selection_failed(self, name: str, detail: str) -> Dict[str, Any]:
        self.logger.warning("Project selection failed", project=name, error=detail)
        message = f"Failed to select repository: {detail}"
        await self.client.send_status("error", message, "")
        return {"success": False, "message": message}

    async def invoke_function(
        self,
        function: str,
        args: Dict[str, Any],
        project: Optional[str] = None,
    ) -> Optional[Outcome]:
        """Diagnostics path: run a tool directly, bypassing the realtime service."""
        if project and project != self.current_project:
            selected = await self.select_project(project)
            if not selected["success"]:
                return None

        call = FunctionCall(call_id=f"test-{uuid.uuid4().hex[:12]}", name=function, arguments=dict(args))
        async with self._lock:
            if self.closed:
                return None
            self._pending_calls += 1
            project = self.current_project
            turn = self._turn
        return await self._execute_call(call, project, turn, via_upstream=False)

    async def interrupt(self) -> bool:
        """Explicit interruption: roll back the in-flight turn and ask the collaborator to stop."""
        async with self._lock:
            if self.closed:
                return False
            rollback = self._rollback_locked()
            project = self.current_project

        if rollback is None:
            await self.client.send_status("connected", "Nothing to interrupt", project)
            return False

        await self.client.send("processing_interrupted", rollback)
        if isinstance(self.project_manager, InterruptibleProjectManager):
            try:
                await self.project_manager.interrupt()
            except Exception as e:
                self.logger.warning("Collaborator interrupt failed", error=str(e))
        await self.client.send_status("interrupted", INTERRUPTED_MARKER, project)
        return True

    # ------------------------------------------------------------------
    # Upstream

    async def _connect_upstream(self, project: Optional[str]) -> Optional[UpstreamLink]:
        link = self._upstream_factory(self.id)
        start_ts = time.time()
        await link.connect(get_instructions(self.policy.prompt_name), self.registry.upstream_definitions())

        async with self._lock:
            if self.closed:
                await link.close()
                return None
            previous, self.upstream = self.upstream, link
            self._upstream_task = asyncio.create_task(self._upstream_loop(link))
        if previous is not None and previous is not link:
            await previous.close()

        self.emitter.emit(
            "upstream.connected",
            self.id,
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        if project:
            await self._refresh_project_context(link, project)
        return link

    async def _refresh_project_context(self, upstream: UpstreamLink, project: str) -> None:
        try:
            status = await self.project_manager.get_project_status(project)
            instructions = get_project_instructions(
                project,
                status or {},
                self.registry.names(),
                self.policy.prompt_name,
            )
            await upstream.update_session(
                instructions=instructions,
                tools=self.registry.upstream_definitions(),
            )
        except UpstreamConnectionError as e:
            await self._fail_upstream(upstream, e)
        except Exception as e:
            self.logger.warning("Failed to update realtime context", project=project, error=str(e))

    async def _upstream_loop(self, link: UpstreamLink) -> None:
        try:
            async for event in link.events():
                if self.closed:
                    return
                await self.handle_upstream_event(event)
        except UpstreamConnectionError as e:
            await self._fail_upstream(link, e)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.exception("Upstream loop crashed")
            await self._fail_upstream(link, e)
            return
        if not self.closed:
            await self._fail_upstream(link, UpstreamConnectionError("connection closed by realtime service"))

    async def _fail_upstream(self, link: Optional[UpstreamLink], error: BaseException) -> None:
        """Hard upstream failure: discard the link and move to error."""
        category = UpstreamErrorClassifier.classify(error)
        async with self._lock:
            if self.closed:
                return
            if link is not None and link is not self.upstream:
                return
            if link is not None:
                self.upstream = None
                task, self._upstream_task = self._upstream_task, None
                if task is not None and task is not asyncio.current_task():
                    task.cancel()
            self._transition_locked(SessionState.ERROR)
            project = self.current_project

        self.logger.warning("Realtime link failed", category=category, error=str(error))
        self.emitter.upstream_error(self.id, category, UpstreamErrorClassifier.redact(str(error)))
        if link is not None:
            await link.close()
        await self.client.send_status("error", UpstreamErrorClassifier.user_message(category), project)

    async def handle_upstream_event(self, event: UpstreamEvent) -> None:
        """Route one decoded upstream event."""
        if self.closed:
            return

        if isinstance(event, AudioDelta):
            if event.audio:
                await self.client.send_audio(event.audio)

        elif isinstance(event, TranscriptDelta):
            self._assistant_transcript += event.delta

        elif isinstance(event, TranscriptDone):
            await self._on_transcript_done(event)

        elif isinstance(event, FunctionCallArgumentsDone):
            await self._on_function_call(event.call)

        elif isinstance(event, ResponseDone):
            await self._on_response_done()

        elif isinstance(event, SpeechStarted):
            await self.client.send_status("processing", "Speech detected...", self.current_project)

        elif isinstance(event, SpeechStopped):
            await self.client.send_status("processing", "Processing your request...", self.current_project)

        elif isinstance(event, UpstreamErrorEvent):
            async with self._lock:
                if self.closed:
                    return
                self._transition_locked(SessionState.ERROR)
                project = self.current_project
            detail = describe_error_event(event)
            self.emitter.upstream_error(self.id, event.error_type or "upstream.error", detail)
            await self.client.send_status("error", event.message, project)

        elif isinstance(event, ProtocolErrorEvent):
            self.emitter.emit(
                "upstream.protocol_error",
                self.id,
                severity=Severity.WARN,
                detail=event.detail,
            )
            await self.client.send_status(
                "error",
                UpstreamErrorClassifier.user_message("upstream.protocol_error"),
                self.current_project,
            )

        elif isinstance(event, Unhandled):
            self.logger.debug("Unhandled realtime event", event_type=event.type)

        elif isinstance(event, (SessionReady, Lifecycle)):
            self.logger.debug("Realtime lifecycle event", event=type(event).__name__)

    async def _on_transcript_done(self, event: TranscriptDone) -> None:
        if event.source == "assistant":
            transcript = event.transcript or self._assistant_transcript
            self._assistant_transcript = ""
            if transcript:
                await self.client.send("assistant_transcript", {"text": transcript})
            return
        if not event.transcript:
            return

        async with self._lock:
            if self.closed:
                return
            self.conversation.transcriptions.append({"text": event.transcript, "timestamp": _utc_iso()})
        await self.client.send_transcription(event.transcript)
        await self._persist_message("user", event.transcript, {"source": "voice"})

    async def _on_response_done(self) -> None:
        async with self._lock:
            if self.closed:
                return
            if self.state not in (SessionState.PROCESSING, SessionState.IDLE):
                # A tool is still running or the user is already recording again
                return
            self._transition_locked(SessionState.IDLE)
            self.processing_marker = None
            project = self.current_project
        await self.client.send_status("connected", "Ready for next command", project)

    # ------------------------------------------------------------------
    # Function calls

    async def _on_function_call(self, call: FunctionCall) -> None:
        async with self._lock:
            if self.closed:
                return
            if call.call_id in self._processed_calls:
                self.emitter.duplicate_call_ignored(self.id, call.call_id, call.name, reason="call_id")
                return
            self._remember_call_locked(call.call_id)

            if self._is_recent_duplicate_locked(call):
                self.emitter.duplicate_call_ignored(self.id, call.call_id, call.name, reason="content")
                return

            self._pending_calls += 1
            if self.state in (SessionState.PROCESSING, SessionState.IDLE):
                self._transition_locked(SessionState.EXECUTING)
            project = self.current_project
            turn = self._turn

        self._spawn(self._execute_call(call, project, turn, via_upstream=True))

    def _remember_call_locked(self, call_id: str) -> None:
        self._processed_calls[call_id] = None
        limit = self.policy.max_processed_call_ids
        if limit is not None and limit > 0:
            while len(self._processed_calls) > limit:
                evicted, _ = self._processed_calls.popitem(last=False)
                self.logger.warning("Evicted oldest processed call id", call_id=evicted, limit=limit)

    def _is_recent_duplicate_locked(self, call: FunctionCall) -> bool:
        window = self.policy.content_dedup_window_seconds
        if window <= 0:
            return False
        now = self._now()
        for key, seen_at in list(self._recent_content.items()):
            if now - seen_at > CONTENT_DEDUP_RETENTION_SECONDS:
                del self._recent_content[key]
        key = call.content_key()
        seen_at = self._recent_content.get(key)
        if seen_at is not None and now - seen_at < window:
            return True
        self._recent_content[key] = now
        return False

    async def _execute_call(
        self,
        call: FunctionCall,
        project: Optional[str],
        turn: int,
        via_upstream: bool,
    ) -> Outcome:
        """
        Run one call with _pending_calls already incremented by the caller.

        Status "executing" goes out before dispatch and "completed"/"error"
        after it, whatever the outcome.
        """
        descriptor = self.registry.get(call.name)
        label = "Testing" if not via_upstream else "Executing"
        await self.client.send_status("executing", f"{label}: {call.name}", project)

        if descriptor is not None and descriptor.streams:
            await self.client.send_function_result(call.name, "Asking coding agent...")
            if self.conversation.continuation_id:
                call = FunctionCall(
                    call_id=call.call_id,
                    name=call.name,
                    arguments={**call.arguments, "continuation_id": self.conversation.continuation_id},
                )

        self.emitter.function_call_dispatched(
            self.id, call.call_id, call.name, self.dispatcher.category_of(call.name).value
        )
        start_ts = time.time()
        on_stream = functools.partial(self.handle_stream_message, turn=turn)
        try:
            outcome = await self.dispatcher.dispatch(call, project, on_stream=on_stream)
        finally:
            async with self._lock:
                self._pending_calls -= 1
        self.emitter.function_call_completed(
            self.id, call.call_id, call.name, outcome.success, int((time.time() - start_ts) * 1000)
        )

        async with self._lock:
            if self.closed:
                return outcome
            self._record_outcome_locked(outcome)
            upstream = self._connected_upstream_locked() if via_upstream else None
            if via_upstream and self.state is SessionState.EXECUTING and self._pending_calls == 0:
                if outcome.category is ToolCategory.STANDARD and upstream is not None:
                    self._transition_locked(SessionState.PROCESSING)
                else:
                    self._transition_locked(SessionState.IDLE)
            if self._pending_calls == 0 and self.state is not SessionState.PROCESSING:
                # No tool left running and no realtime response pending
                self.processing_marker = None
            project = self.current_project

        if outcome.success and descriptor is not None and descriptor.client_event == "advice":
            data = outcome.data if isinstance(outcome.data, dict) else {}
            await self.client.send_advice(
                question=data.get("question") or call.arguments.get("question") or "Implementation question",
                advice=data.get("advice") or outcome.message,
                repository=data.get("repository") or project,
            )
        await self.client.send_function_result(call.name, outcome.result, outcome.success)

        if upstream is not None:
            try:
                await upstream.send_function_output(call.call_id, outcome.upstream_output())
                if outcome.category is ToolCategory.STANDARD:
                    await upstream.request_response()
            except UpstreamConnectionError as e:
                await self._fail_upstream(upstream, e)

        if outcome.success:
            await self.client.send_status("completed", f"Completed: {call.name}", project)
        else:
            await self.client.send_status("error", f"Failed: {outcome.message}", project)
        return outcome

    def _record_outcome_locked(self, outcome: Outcome) -> None:
        if isinstance(outcome.data, dict):
            continuation = outcome.data.get("continuation_id") or outcome.data.get("sessionId")
            if continuation:
                self.conversation.continuation_id = str(continuation)
        self.conversation.artifacts.append(Artifact(
            kind="function_result",
            payload={"function": outcome.function, "result": outcome.result, "success": outcome.success},
            recorded_at=self._now(),
            advisory=outcome.category is ToolCategory.SIDE_CHANNEL,
        ))

    # ------------------------------------------------------------------
    # Streaming tool output and interruption

    async def handle_stream_message(self, message: Dict[str, Any], turn: Optional[int] = None) -> None:
        """
        Progress message from a streaming tool.

        turn is the rollback generation the call started under; output
        from a turn that has since been rolled back is dropped.
        """
        kind = message.get("type")
        timestamp = message.get("timestamp") or _utc_iso()

        async with self._lock:
            if self.closed:
                return
            if turn is not None and turn != self._turn:
                self.logger.debug("Dropping stream output from interrupted turn", stream_type=kind)
                return
            if kind == "text":
                content = str(message.get("content") or "")
                if self.processing_marker is None:
                    self.processing_marker = len(self.conversation.streaming_texts)
                self.conversation.streaming_texts.append(LogEntry(content=content, timestamp=timestamp))
            elif kind == "todos":
                todos = message.get("todos") or []
                self.conversation.artifacts.append(Artifact(
                    kind="todos",
                    payload={"todos": todos, "timestamp": timestamp},
                    recorded_at=self._now(),
                    advisory=True,
                ))
            else:
                self.logger.debug("Ignoring stream message", stream_type=kind)
                return

        if kind == "text":
            await self.client.send_streaming_text(content, timestamp)
            await self._persist_message("assistant", content, {"streaming": True, "timestamp": timestamp})
        else:
            await self.client.send_todos(todos, timestamp)
            await self._persist_message("assistant", "TodoWrite", {"todos": todos, "timestamp": timestamp})

    def _rollback_locked(self) -> Optional[Dict[str, Any]]:
        """
        Undo the client-visible output of an in-flight turn.

        Truncates the streaming-text log to processing_marker and drops
        advisory artifacts recorded within the rollback window. Artifacts
        carry no turn boundary, so the window is a best-effort cut: an
        advisory artifact from an earlier turn that finished moments ago
        can be dropped too. External side effects are not undone.
        Returns None (and touches nothing) when no turn is in progress.
        """
        marker = self.processing_marker
        if marker is None:
            return None

        log = self.conversation.streaming_texts
        truncated = max(len(log) - marker, 0)
        del log[marker:]

        cutoff = self._now() - self.policy.rollback_window_seconds
        kept: List[Artifact] = []
        discarded = 0
        for artifact in self.conversation.artifacts:
            if artifact.advisory and artifact.recorded_at >= cutoff:
                discarded += 1
            else:
                kept.append(artifact)
        self.conversation.artifacts = kept

        log.append(LogEntry(content=INTERRUPTED_MARKER, timestamp=_utc_iso(), synthetic=True))
        self.processing_marker = None
        self._turn += 1

        self.emitter.session_interrupted(self.id, truncated, discarded)
        self.logger.info("Rolled back interrupted turn", truncated_entries=truncated, discarded_artifacts=discarded)
        return {
            "truncated_to": marker,
            "discarded_artifacts": discarded,
            "message": INTERRUPTED_MARKER,
        }

    # ------------------------------------------------------------------
    # Persistence

    async def _persist_message(self, role: str, content: str, metadata: Dict[str, Any]) -> None:
        if not self.chat_id or self.transcript_store is None:
            return
        try:
            await self.transcript_store.add_message(self.chat_id, role, content, metadata)
        except Exception as e:
            self.logger.warning("Failed to persist message", role=role, error=str(e))

    async def create_snapshot(self) -> None:
        if not self.chat_id or self.transcript_store is None:
            return
        async with self._lock:
            state = self.conversation.to_dict()
        try:
            await self.transcript_store.create_snapshot(self.chat_id, state)
            self.logger.debug("Created snapshot", chat_id=self.chat_id)
        except Exception as e:
            self.logger.warning("Failed to create snapshot", chat_id=self.chat_id, error=str(e))

    async def _snapshot_loop(self) -> None:
        while not self.closed:
            await self._sleep(self.policy.snapshot_interval_seconds)
            if self.closed:
                return
            await self.create_snapshot()

    # ------------------------------------------------------------------
    # Helpers

    def _connected_upstream_locked(self) -> Optional[UpstreamLink]:
        upstream = self.upstream
        if upstream is not None and upstream.connected:
            return upstream
        return None

    def _transition_locked(self, new_state: SessionState) -> None:
        old_state = self.state
        if old_state is new_state:
            return
        self.state = new_state
        self.emitter.session_state_changed(self.id, old_state.value, new_state.value)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)
        return task

    async def wait_for_dispatches(self) -> None:
        """Wait for in-flight function calls to finish."""
        while self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks), return_exceptions=True)


class SessionManager:
    """Table of live sessions, owned by the server application."""

    def __init__(self):
        self._sessions: Dict[str, VoiceSession] = {}

    def register(self, session: VoiceSession) -> VoiceSession:
        if session.id in self._sessions:
            raise ValueError(f"session {session.id} already registered")
        self._sessions[session.id] = session
        return session

    def get_session(self, session_id: str) -> Optional[VoiceSession]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[VoiceSession]:
        return self._sessions.pop(session_id, None)

    def list_sessions(self, state: Optional[SessionState] = None) -> List[VoiceSession]:
        sessions = list(self._sessions.values())
        if state:
            sessions = [s for s in sessions if s.state == state]
        return sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        await asyncio.gather(*(s.close(reason="shutdown") for s in sessions), return_exceptions=True)
