"""
Tool catalog and registry tests.
"""
import pytest

from relay.tools import ToolCategory, ToolDescriptor, ToolRegistry, tool_registry


STANDARD_TOOLS = {
    "create_github_issue",
    "update_github_issue",
    "close_github_issue",
    "list_issues",
    "get_repository_info",
    "list_commits",
    "create_pull_request",
    "list_pull_requests",
    "git_status",
    "git_commit",
}


def test_catalog_contents():
    assert set(tool_registry.names()) == STANDARD_TOOLS | {"ask_coding_agent", "get_implementation_advice"}
    for name in STANDARD_TOOLS:
        assert tool_registry.get(name).category is ToolCategory.STANDARD


def test_side_channel_tools():
    agent = tool_registry.get("ask_coding_agent")
    advice = tool_registry.get("get_implementation_advice")

    assert agent.category is ToolCategory.SIDE_CHANNEL
    assert agent.streams is True
    assert advice.category is ToolCategory.SIDE_CHANNEL
    assert advice.requires_project is False
    assert advice.client_event == "advice"


def test_upstream_definitions_format():
    definitions = tool_registry.upstream_definitions()

    assert len(definitions) == len(tool_registry)
    issue = next(d for d in definitions if d["name"] == "create_github_issue")
    assert issue["type"] == "function"
    assert issue["parameters"]["type"] == "object"
    assert "title" in issue["parameters"]["properties"]


def test_unknown_lookup():
    assert tool_registry.get("delete_universe") is None
    assert "delete_universe" not in tool_registry
    assert "list_issues" in tool_registry


def test_duplicate_names_rejected():
    tool = ToolDescriptor(name="echo", description="Echo", parameter_schema={"type": "object"})

    with pytest.raises(ValueError):
        ToolRegistry([tool, tool])


def test_registry_is_read_only():
    registry = ToolRegistry([ToolDescriptor(name="echo", description="Echo", parameter_schema={})])

    with pytest.raises(TypeError):
        registry._tools["other"] = None
