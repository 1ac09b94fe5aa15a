"""
Tool catalog exposed to the realtime service.

Process-wide and read-only after import. Each descriptor carries the
JSON schema announced upstream and the dispatch category that decides
where its result goes:

- STANDARD: result goes back upstream as the function output and a new
  response is requested.
- SIDE_CHANNEL: result goes straight to the client; upstream only gets
  an acknowledgment and no follow-up response.
"""
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional


class ToolCategory(str, Enum):
    STANDARD = "standard"
    SIDE_CHANNEL = "side_channel"


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    parameter_schema: Mapping[str, Any]
    category: ToolCategory = ToolCategory.STANDARD
    requires_project: bool = True
    # Extra client event kind for advisory results (e.g. "advice")
    client_event: Optional[str] = None
    # Tool emits progress messages while running
    streams: bool = False

    def to_upstream(self) -> Dict[str, Any]:
        """Function definition in the realtime session.update format."""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameter_schema),
        }


def _object(properties: Dict[str, Any], required: Iterable[str] = ()) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    required = list(required)
    if required:
        schema["required"] = required
    return schema


_STATE_FILTER = {
    "type": "string",
    "enum": ["open", "closed", "all"],
    "description": "Filter by state",
}
_LIMIT = {"type": "number", "description": "Maximum number of items to return"}


DEFAULT_TOOLS = (
    ToolDescriptor(
        name="create_github_issue",
        description="Create a new GitHub issue",
        parameter_schema=_object(
            {
                "title": {"type": "string", "description": "The title of the issue"},
                "body": {"type": "string", "description": "The body/description of the issue"},
                "labels": {"type": "array", "items": {"type": "string"}, "description": "Labels to add"},
                "assignees": {"type": "array", "items": {"type": "string"}, "description": "GitHub usernames to assign"},
            },
            required=["title"],
        ),
    ),
    ToolDescriptor(
        name="update_github_issue",
        description="Update an existing GitHub issue",
        parameter_schema=_object(
            {
                "number": {"type": "number", "description": "The issue number to update"},
                "title": {"type": "string", "description": "New title for the issue"},
                "body": {"type": "string", "description": "New body for the issue"},
                "state": {"type": "string", "enum": ["open", "closed"], "description": "New state for the issue"},
            },
            required=["number"],
        ),
    ),
    ToolDescriptor(
        name="close_github_issue",
        description="Close a GitHub issue",
        parameter_schema=_object(
            {"number": {"type": "number", "description": "The issue number to close"}},
            required=["number"],
        ),
    ),
    ToolDescriptor(
        name="list_issues",
        description="List GitHub issues for the current repository",
        parameter_schema=_object({"state": _STATE_FILTER, "limit": _LIMIT}),
    ),
    ToolDescriptor(
        name="get_repository_info",
        description="Get information about the current repository",
        parameter_schema=_object({}),
    ),
    ToolDescriptor(
        name="list_commits",
        description="List recent commits for the repository",
        parameter_schema=_object({
            "limit": {"type": "number", "description": "Number of commits to return"},
            "branch": {"type": "string", "description": "Branch to get commits from"},
        }),
    ),
    ToolDescriptor(
        name="create_pull_request",
        description="Create a new pull request",
        parameter_schema=_object(
            {
                "title": {"type": "string", "description": "The title of the pull request"},
                "body": {"type": "string", "description": "The body/description of the pull request"},
                "head": {"type": "string", "description": "The branch to merge from"},
                "base": {"type": "string", "description": "The branch to merge into (default: main/master)"},
            },
            required=["title", "head"],
        ),
    ),
    ToolDescriptor(
        name="list_pull_requests",
        description="List pull requests for the repository",
        parameter_schema=_object({"state": _STATE_FILTER, "limit": _LIMIT}),
    ),
    ToolDescriptor(
        name="git_status",
        description="Show the working tree status of the local checkout",
        parameter_schema=_object({}),
    ),
    ToolDescriptor(
        name="git_commit",
        description="Commit staged changes in the local checkout",
        parameter_schema=_object(
            {
                "message": {"type": "string", "description": "Commit message"},
                "all": {"type": "boolean", "description": "Stage all tracked changes before committing"},
            },
            required=["message"],
        ),
    ),
    ToolDescriptor(
        name="ask_coding_agent",
        description=(
            "CALL THIS FUNCTION when the user asks ANY question, seeks advice, or wants help "
            "with implementation, planning, or coding. Routes the question to the coding agent."
        ),
        parameter_schema=_object(
            {
                "prompt": {"type": "string", "description": "The planning prompt to send to the coding agent"},
                "workingDirectory": {
                    "type": "string",
                    "description": "Working directory for the agent (optional, defaults to repository path)",
                },
            },
            required=["prompt"],
        ),
        category=ToolCategory.SIDE_CHANNEL,
        streams=True,
    ),
    ToolDescriptor(
        name="get_implementation_advice",
        description=(
            "Get expert implementation advice for questions like \"How should I...\", "
            "\"What's the best way to...\" or \"Help me implement...\"."
        ),
        parameter_schema=_object(
            {
                "question": {"type": "string", "description": "The exact implementation question the user asked"},
                "context": {"type": "string", "description": "Technology stack, requirements or constraints"},
            },
            required=["question"],
        ),
        category=ToolCategory.SIDE_CHANNEL,
        requires_project=False,
        client_event="advice",
    ),
)


class ToolRegistry:
    """Read-only name -> ToolDescriptor mapping."""

    def __init__(self, tools: Iterable[ToolDescriptor] = DEFAULT_TOOLS):
        by_name: Dict[str, ToolDescriptor] = {}
        for tool in tools:
            if tool.name in by_name:
                raise ValueError(f"duplicate tool name: {tool.name}")
            by_name[tool.name] = tool
        self._tools = MappingProxyType(by_name)

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> List[str]:
        return list(self._tools)

    def upstream_definitions(self) -> List[Dict[str, Any]]:
        return [tool.to_upstream() for tool in self._tools.values()]


# Process-wide registry
tool_registry = ToolRegistry()
