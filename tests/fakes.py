"""
In-memory stand-ins for the relay's sockets and collaborators.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

from starlette.websockets import WebSocketState

from relay.client_link import ClientLink
from relay.dispatcher import FunctionDispatcher
from relay.errors import ProjectSelectionError
from relay.session import SessionPolicy, VoiceSession


class FakeWebSocket:
    """Client socket: queued inbound frames, recorded outbound events."""

    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.application_state = WebSocketState.CONNECTED

    def push(self, event_type: str, data: Any = None) -> None:
        frame = json.dumps({"type": event_type, "data": data})
        self.inbound.put_nowait({"type": "websocket.receive", "text": frame})

    def push_text(self, text: str) -> None:
        self.inbound.put_nowait({"type": "websocket.receive", "text": text})

    def push_bytes(self, data: bytes) -> None:
        self.inbound.put_nowait({"type": "websocket.receive", "bytes": data})

    def disconnect(self) -> None:
        self.inbound.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def receive(self) -> Dict[str, Any]:
        return await self.inbound.get()

    async def send_json(self, data: Dict[str, Any]) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def events(self, event_type: str) -> List[Dict[str, Any]]:
        return [m["data"] for m in self.sent if m["type"] == event_type]

    def statuses(self) -> List[str]:
        return [d["status"] for d in self.events("status")]


class FakeUpstream:
    """Realtime link double. Feed decoded events with feed(); end() closes the stream."""

    def __init__(self, fail_connect: Optional[Exception] = None):
        self.fail_connect = fail_connect
        self.connected = False
        self.connect_calls = 0
        self.closed = False
        self.instructions: Optional[str] = None
        self.tools: List[Dict[str, Any]] = []
        self.sent: List[tuple] = []
        self._events: asyncio.Queue = asyncio.Queue()

    async def connect(self, instructions: str, tools: List[Dict[str, Any]]) -> None:
        self.connect_calls += 1
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connected = True
        self.instructions = instructions
        self.tools = tools

    async def update_session(self, instructions=None, tools=None, full=False) -> None:
        self.sent.append(("session.update", {"instructions": instructions, "tools": tools}))

    async def append_audio(self, audio_b64: str) -> None:
        self.sent.append(("input_audio_buffer.append", audio_b64))

    async def commit_audio(self) -> None:
        self.sent.append(("input_audio_buffer.commit", None))

    async def request_response(self) -> None:
        self.sent.append(("response.create", None))

    async def send_function_output(self, call_id: str, output: str) -> None:
        self.sent.append(("function_call_output", {"call_id": call_id, "output": output}))

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    def feed(self, event) -> None:
        self._events.put_nowait(event)

    def end(self) -> None:
        self._events.put_nowait(None)

    async def close(self) -> None:
        self.closed = True
        self.connected = False
        self._events.put_nowait(None)

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.sent if k == kind)

    def function_outputs(self) -> List[Dict[str, Any]]:
        return [payload for k, payload in self.sent if k == "function_call_output"]


class FakeProjectManager:
    """Project collaborator double with scripted results and optional gating."""

    def __init__(self, projects=("demo-repo",)):
        self.projects = set(projects)
        self.calls: List[tuple] = []
        self.results: Dict[str, Any] = {}
        self.stream_messages: Dict[str, List[Dict[str, Any]]] = {}
        self.late_stream_messages: Dict[str, List[Dict[str, Any]]] = {}
        self.gate: Optional[asyncio.Event] = None
        self.interrupted = 0

    async def select_project(self, name: str) -> None:
        if name not in self.projects:
            raise ProjectSelectionError(f"Repository '{name}' not found or access denied")

    async def get_project_status(self, name: str) -> Dict[str, Any]:
        return {"fullName": f"octo/{name}", "url": f"https://github.com/octo/{name}"}

    async def execute_function(self, project, name, args, on_stream=None) -> Dict[str, Any]:
        self.calls.append((project, name, dict(args)))
        for message in self.stream_messages.get(name, []):
            if on_stream is not None:
                await on_stream(message)
        if self.gate is not None:
            await self.gate.wait()
        for message in self.late_stream_messages.get(name, []):
            if on_stream is not None:
                await on_stream(message)
        result = self.results.get(name, {"success": True, "data": {"function": name, "project": project}})
        if isinstance(result, Exception):
            raise result
        return result

    async def interrupt(self) -> bool:
        self.interrupted += 1
        return True


class FakeTranscriptStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: List[tuple] = []
        self.snapshots: List[tuple] = []

    async def resume_session(self, chat_id: str) -> Dict[str, Any]:
        if self.fail:
            raise RuntimeError("store offline")
        return {"chat": {"id": chat_id}, "snapshot": None, "messages": [{"role": "user", "content": "hi"}]}

    async def add_message(self, chat_id, role, content, metadata=None) -> None:
        if self.fail:
            raise RuntimeError("store offline")
        self.messages.append((chat_id, role, content, metadata))

    async def create_snapshot(self, chat_id, state) -> None:
        if self.fail:
            raise RuntimeError("store offline")
        self.snapshots.append((chat_id, state))


class Clock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_session(
    project_manager: Optional[FakeProjectManager] = None,
    upstream: Optional[FakeUpstream] = None,
    policy: Optional[SessionPolicy] = None,
    **kwargs,
):
    """Session wired to fakes. Returns (session, websocket, upstream, project_manager)."""
    websocket = FakeWebSocket()
    upstream = upstream or FakeUpstream()
    project_manager = project_manager or FakeProjectManager()
    session = VoiceSession(
        ClientLink(websocket),
        FunctionDispatcher(project_manager),
        lambda session_id: upstream,
        policy=policy or SessionPolicy(snapshot_interval_seconds=0),
        **kwargs,
    )
    return session, websocket, upstream, project_manager


async def settle(session: Optional[VoiceSession] = None, rounds: int = 20) -> None:
    """Let queued events and spawned dispatches run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
    if session is not None:
        await session.wait_for_dispatches()
        for _ in range(rounds):
            await asyncio.sleep(0)
