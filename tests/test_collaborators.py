"""
HttpProjectManager tests against an in-process aiohttp tool service.
"""
import json

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from relay.collaborators import HttpProjectManager, InterruptibleProjectManager, ProjectManager
from relay.errors import ProjectSelectionError, ToolError


class ToolServiceStub:
    def __init__(self):
        self.requests = []
        self.lines = [
            {"type": "stream", "message": {"type": "text", "content": "Working", "timestamp": "t1"}},
            {"type": "result", "success": True, "data": {"issues": []}},
        ]
        self.execute_status = 200

    def app(self):
        app = web.Application()
        app.router.add_post("/projects/select", self.select)
        app.router.add_get("/projects/{name}/status", self.status)
        app.router.add_post("/functions/execute", self.execute)
        app.router.add_post("/functions/interrupt", self.interrupt)
        return app

    async def select(self, request):
        body = await request.json()
        self.requests.append(("select", body))
        if body["project"] != "demo-repo":
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response({"success": True})

    async def status(self, request):
        name = request.match_info["name"]
        return web.json_response({"fullName": f"octo/{name}", "url": f"https://github.com/octo/{name}"})

    async def execute(self, request):
        body = await request.json()
        self.requests.append(("execute", body))
        if self.execute_status != 200:
            return web.Response(status=self.execute_status)
        payload = "\n".join(json.dumps(line) for line in self.lines) + "\n"
        return web.Response(text=payload, content_type="application/x-ndjson")

    async def interrupt(self, request):
        self.requests.append(("interrupt", None))
        return web.json_response({"interrupted": True})


@pytest_asyncio.fixture
async def tool_service():
    stub = ToolServiceStub()
    server = test_utils.TestServer(stub.app())
    await server.start_server()
    yield stub, str(server.make_url(""))
    await server.close()


def test_implements_collaborator_protocols():
    manager = HttpProjectManager("http://tools")

    assert isinstance(manager, ProjectManager)
    assert isinstance(manager, InterruptibleProjectManager)


@pytest.mark.asyncio
async def test_select_project(tool_service):
    stub, base_url = tool_service
    manager = HttpProjectManager(base_url)

    await manager.select_project("demo-repo")
    with pytest.raises(ProjectSelectionError, match="ghost-repo"):
        await manager.select_project("ghost-repo")

    assert stub.requests[0] == ("select", {"project": "demo-repo"})


@pytest.mark.asyncio
async def test_project_status(tool_service):
    _, base_url = tool_service
    manager = HttpProjectManager(base_url)

    status = await manager.get_project_status("demo-repo")

    assert status["fullName"] == "octo/demo-repo"


@pytest.mark.asyncio
async def test_execute_function_streams_and_returns_result(tool_service):
    stub, base_url = tool_service
    manager = HttpProjectManager(base_url)
    streamed = []

    async def on_stream(message):
        streamed.append(message)

    result = await manager.execute_function("demo-repo", "ask_coding_agent", {"prompt": "plan"}, on_stream)

    assert result == {"success": True, "data": {"issues": []}}
    assert streamed == [{"type": "text", "content": "Working", "timestamp": "t1"}]
    assert stub.requests[-1] == (
        "execute",
        {"project": "demo-repo", "function": "ask_coding_agent", "args": {"prompt": "plan"}},
    )


@pytest.mark.asyncio
async def test_execute_function_without_result_line(tool_service):
    stub, base_url = tool_service
    stub.lines = [{"type": "stream", "message": {"type": "text", "content": "x"}}]
    manager = HttpProjectManager(base_url)

    with pytest.raises(ToolError, match="no result"):
        await manager.execute_function("demo-repo", "list_issues", {})


@pytest.mark.asyncio
async def test_execute_function_http_error(tool_service):
    stub, base_url = tool_service
    stub.execute_status = 502
    manager = HttpProjectManager(base_url)

    with pytest.raises(ToolError, match="502"):
        await manager.execute_function("demo-repo", "list_issues", {})


@pytest.mark.asyncio
async def test_unreachable_service():
    manager = HttpProjectManager("http://127.0.0.1:9")

    with pytest.raises(ToolError):
        await manager.execute_function("demo-repo", "list_issues", {})
    assert await manager.interrupt() is False


@pytest.mark.asyncio
async def test_interrupt(tool_service):
    stub, base_url = tool_service
    manager = HttpProjectManager(base_url)

    assert await manager.interrupt() is True
    assert stub.requests[-1] == ("interrupt", None)
