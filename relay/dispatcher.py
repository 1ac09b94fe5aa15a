"""
Function-call dispatch.

Resolves a call against the tool registry, runs it through the project
collaborator and folds whatever happens into an Outcome. The dispatcher
never raises for tool-level failures; the session decides where the
outcome goes based on its category.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from logging_setup import get_logger, Component as LogComponent
from .collaborators import ProjectManager, StreamCallback
from .errors import ProjectSelectionError, ProtocolError, ToolError
from .tools import ToolCategory, ToolRegistry, tool_registry


@dataclass(frozen=True)
class FunctionCall:
    """A completed function call from the realtime service (or a test invocation)."""

    call_id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_wire(cls, call_id: Optional[str], name: Optional[str], arguments: Any) -> "FunctionCall":
        """
        Build from the raw upstream fields; arguments arrive as a JSON string.

        Raises ProtocolError on a missing id/name or undecodable arguments.
        """
        if not call_id or not name:
            raise ProtocolError("function call without call_id or name")
        if arguments in (None, ""):
            parsed: Any = {}
        elif isinstance(arguments, str):
            try:
                parsed = json.loads(arguments)
            except json.JSONDecodeError as e:
                raise ProtocolError(f"invalid arguments for {name}: {e}") from e
        else:
            parsed = arguments
        if not isinstance(parsed, dict):
            raise ProtocolError(f"arguments for {name} are not an object")
        return cls(call_id=call_id, name=name, arguments=parsed)

    def content_key(self) -> str:
        """Identity of the call's content, independent of its call_id."""
        return f"{self.name}:{json.dumps(self.arguments, sort_keys=True, default=str)}"


@dataclass(frozen=True)
class Outcome:
    function: str
    success: bool
    category: ToolCategory
    data: Any = None
    message: Optional[str] = None

    @property
    def result(self) -> Any:
        """Human-facing payload: data when present, else the message."""
        return self.data if self.data is not None else self.message

    def upstream_output(self) -> str:
        """Function output sent back to the realtime service."""
        if self.category is ToolCategory.SIDE_CHANNEL:
            return json.dumps({
                "status": "completed" if self.success else "error",
                "message": "Result delivered to the user" if self.success else (self.message or "failed"),
            })
        if not self.success:
            return f"Error: {self.message}"
        return json.dumps(self.result, default=str)


class FunctionDispatcher:
    """Runs function calls against the project collaborator."""

    def __init__(self, project_manager: ProjectManager, registry: ToolRegistry = tool_registry):
        self.project_manager = project_manager
        self.registry = registry
        self.logger = get_logger(LogComponent.FUNCTION_DISPATCHER)

    def category_of(self, name: str) -> ToolCategory:
        tool = self.registry.get(name)
        return tool.category if tool else ToolCategory.STANDARD

    async def dispatch(
        self,
        call: FunctionCall,
        project: Optional[str],
        on_stream: Optional[StreamCallback] = None,
    ) -> Outcome:
        """
        Execute one call scoped to project.

        project is the session's current project, read by the caller
        before dispatch; the collaborator call itself runs unlocked.
        """
        tool = self.registry.get(call.name)
        if tool is None:
            self.logger.warning("Unknown function requested", function=call.name, call_id=call.call_id)
            return Outcome(
                function=call.name,
                success=False,
                category=ToolCategory.STANDARD,
                message=f"unknown function: {call.name}",
            )

        if tool.requires_project and not project:
            return Outcome(
                function=call.name,
                success=False,
                category=tool.category,
                message="No repository selected. Select a project first.",
            )

        start_ts = time.time()
        try:
            raw = await self.project_manager.execute_function(
                project,
                call.name,
                dict(call.arguments),
                on_stream if tool.streams else None,
            )
        except (ToolError, ProjectSelectionError) as e:
            self.logger.warning(
                "Function failed",
                function=call.name,
                call_id=call.call_id,
                error=str(e),
                latency_ms=int((time.time() - start_ts) * 1000),
            )
            return Outcome(function=call.name, success=False, category=tool.category, message=str(e))
        except Exception as e:
            self.logger.exception(
                "Function raised unexpectedly",
                function=call.name,
                call_id=call.call_id,
                error_type=type(e).__name__,
            )
            return Outcome(
                function=call.name,
                success=False,
                category=tool.category,
                message=f"Failed to execute {call.name}: {e}",
            )

        self.logger.info(
            "Function executed",
            function=call.name,
            call_id=call.call_id,
            latency_ms=int((time.time() - start_ts) * 1000),
        )
        return self._to_outcome(call.name, tool.category, raw)

    @staticmethod
    def _to_outcome(name: str, category: ToolCategory, raw: Any) -> Outcome:
        if not isinstance(raw, dict):
            return Outcome(function=name, success=False, category=category, message="malformed tool result")
        success = bool(raw.get("success"))
        message = raw.get("message")
        if not success and not message:
            message = f"{name} failed"
        return Outcome(
            function=name,
            success=success,
            category=category,
            data=raw.get("data"),
            message=message,
        )
