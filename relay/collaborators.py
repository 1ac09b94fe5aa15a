"""
Interfaces of the collaborators the relay core calls out to, plus an
HTTP client for a tool service that implements the project collaborator.

The relay never looks inside tool results beyond {success, data|message};
git/issue-tracker behaviour lives behind these interfaces.
"""

from __future__ import annotations

import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, runtime_checkable

import aiohttp

from logging_setup import get_logger, Component as LogComponent
from .errors import ProjectSelectionError, ToolError


# Progress messages from streaming tools:
#   {"type": "text", "content": str, "timestamp": str}
#   {"type": "todos", "todos": list, "timestamp": str}
StreamCallback = Callable[[Dict[str, Any]], Awaitable[None]]


@runtime_checkable
class ProjectManager(Protocol):
    """Project / git / issue-tracker collaborator."""

    async def select_project(self, name: str) -> None:
        """Raise ProjectSelectionError if the project does not exist or is not accessible."""

    async def get_project_status(self, name: str) -> Dict[str, Any]:
        """Return at least {fullName, url}."""

    async def execute_function(
        self,
        project: Optional[str],
        name: str,
        args: Dict[str, Any],
        on_stream: Optional[StreamCallback] = None,
    ) -> Dict[str, Any]:
        """Return {success: bool, data: ...} or {success: False, message: str}."""


@runtime_checkable
class InterruptibleProjectManager(ProjectManager, Protocol):
    async def interrupt(self) -> bool:
        """Ask a running streaming tool to stop. Returns True if something was interrupted."""


@runtime_checkable
class TranscriptStore(Protocol):
    """Chat transcript persistence."""

    async def resume_session(self, chat_id: str) -> Dict[str, Any]:
        """Return {chat, snapshot, messages} for an existing chat."""

    async def add_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    async def create_snapshot(self, chat_id: str, state: Dict[str, Any]) -> None:
        ...


class HttpProjectManager:
    """
    Project collaborator backed by a tool service over HTTP.

    Endpoints (relative to base_url):
    - POST /projects/select          {project}
    - GET  /projects/{name}/status
    - POST /functions/execute        {project, function, args} -> NDJSON
    - POST /functions/interrupt

    /functions/execute answers newline-delimited JSON: zero or more
    {"type": "stream", ...} progress lines followed by one
    {"type": "result", "success": ..., "data"|"message": ...} line.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 300.0,
        session_factory: Callable[[], aiohttp.ClientSession] = aiohttp.ClientSession,
    ):
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session_factory = session_factory
        self.logger = get_logger(LogComponent.COLLABORATOR)

    async def select_project(self, name: str) -> None:
        endpoint = f"{self.base_url}/projects/select"
        try:
            async with self._session_factory() as s:
                async with s.post(endpoint, json={"project": name}, timeout=self._timeout) as resp:
                    if resp.status == 404:
                        raise ProjectSelectionError(f"Repository '{name}' not found or access denied")
                    if not 200 <= resp.status < 300:
                        raise ProjectSelectionError(f"Project service answered {resp.status}")
        except aiohttp.ClientError as e:
            raise ProjectSelectionError(f"Project service unreachable: {e}") from e

    async def get_project_status(self, name: str) -> Dict[str, Any]:
        endpoint = f"{self.base_url}/projects/{name}/status"
        try:
            async with self._session_factory() as s:
                async with s.get(endpoint, timeout=self._timeout) as resp:
                    if not 200 <= resp.status < 300:
                        raise ProjectSelectionError(f"Failed to get status for repository: {resp.status}")
                    return await resp.json()
        except aiohttp.ClientError as e:
            raise ProjectSelectionError(f"Project service unreachable: {e}") from e

    async def execute_function(
        self,
        project: Optional[str],
        name: str,
        args: Dict[str, Any],
        on_stream: Optional[StreamCallback] = None,
    ) -> Dict[str, Any]:
        endpoint = f"{self.base_url}/functions/execute"
        start_ts = time.time()
        result: Optional[Dict[str, Any]] = None
        try:
            async with self._session_factory() as s:
                async with s.post(
                    endpoint,
                    json={"project": project, "function": name, "args": args},
                    timeout=self._timeout,
                ) as resp:
                    if not 200 <= resp.status < 300:
                        raise ToolError(f"Tool service answered {resp.status} for {name}")
                    async for raw_line in resp.content:
                        line = raw_line.strip()
                        if not line:
                            continue
                        try:
                            message = json.loads(line)
                        except json.JSONDecodeError as e:
                            raise ToolError(f"Malformed tool service line: {e}") from e
                        if message.get("type") == "stream":
                            if on_stream is not None:
                                await on_stream(message.get("message") or {})
                        elif message.get("type") == "result":
                            result = message
        except aiohttp.ClientError as e:
            raise ToolError(f"Tool service unreachable: {e}") from e

        self.logger.debug(
            "Tool service call finished",
            function=name,
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        if result is None:
            raise ToolError(f"Tool service returned no result for {name}")
        result.pop("type", None)
        return result

    async def interrupt(self) -> bool:
        endpoint = f"{self.base_url}/functions/interrupt"
        try:
            async with self._session_factory() as s:
                async with s.post(endpoint, timeout=aiohttp.ClientTimeout(total=5)) as resp:
                    return 200 <= resp.status < 300
        except aiohttp.ClientError as e:
            self.logger.warning("Interrupt request failed", error=str(e), error_type=type(e).__name__)
            return False
