import asyncio
import json

import pytest

from toolrelay.errors import InvalidToolInputError, UnknownToolError
from toolrelay.tool.dispatcher import ToolDispatcher
from toolrelay.tool.model import ToolCall
from toolrelay.tool.registry import ToolServerRegistry
from toolrelay.tool.types import (
    AgentConfig,
    AppSettings,
    CommandPatternConfig,
    ServerConfig,
    ToolDefinition,
)


class EchoClient:
    def __init__(self, server):
        self.name = server.name
        self.tools = [ToolDefinition(name="echo", description="Echo", schema={"type": "object"})]
        self.closed = False

    async def call_tool(self, tool_name, arguments):
        return [{"type": "text", "text": arguments.get("text", "")}]

    async def cleanup(self):
        self.closed = True


async def echo_factory(server):
    return EchoClient(server)


def make_dispatcher(selected="helper", ignore_files=None):
    settings = AppSettings(
        shell="/bin/sh",
        selected_agent_id=selected,
        ignore_files=ignore_files or [],
        agents=[
            AgentConfig(
                id="helper",
                name="Helper",
                allowed_commands=[CommandPatternConfig(pattern="echo *")],
                mcp_servers=[ServerConfig(name="echo-server", command="node")],
            )
        ],
    )
    return ToolDispatcher(settings, registry=ToolServerRegistry(client_factory=echo_factory))


def test_unknown_tool_type():
    with pytest.raises(UnknownToolError, match="Unknown tool type: fly"):
        asyncio.run(make_dispatcher().execute({"type": "fly"}))


def test_execute_command_requires_a_valid_input_shape():
    with pytest.raises(InvalidToolInputError, match="requires either"):
        asyncio.run(make_dispatcher().execute({"type": "executeCommand", "command": "echo hi"}))


def test_execute_command_uses_the_selected_agent(tmp_path):
    result = asyncio.run(
        make_dispatcher().execute(
            {"type": "executeCommand", "command": "echo \x1b[32mhi\x1b[0m", "cwd": str(tmp_path)}
        )
    )

    assert result["success"] is True
    assert result["result"]["exit_code"] == 0
    assert "\x1b" not in result["result"]["stdout"]


def test_execute_command_without_selected_agent_is_denied(tmp_path):
    dispatcher = make_dispatcher(selected=None)
    call = ToolCall(
        id="call-1",
        name="executeCommand",
        arguments=json.dumps({"command": "echo hi", "cwd": str(tmp_path)}),
    )

    result = asyncio.run(dispatcher.call_tool(call))

    payload = json.loads(result.result)
    assert payload["success"] is False
    assert payload["error"] == "Command not allowed: echo hi"


def test_mcp_tools_are_routed_to_the_registry():
    dispatcher = make_dispatcher()

    async def scenario():
        specs = await dispatcher.get_tool_specs()
        result = await dispatcher.execute({"type": "mcp_echo", "text": "ping"})
        await dispatcher.close()
        return specs, result

    specs, result = asyncio.run(scenario())

    assert [s["function"]["name"] for s in specs] == ["mcp_echo"]
    assert result["success"] is True
    assert result["result"] == [{"type": "text", "text": "ping"}]


def test_mcp_tool_without_servers_is_not_found():
    result = asyncio.run(make_dispatcher(selected=None).execute({"type": "mcp_echo"}))

    assert result["found"] is False
    assert result["error"] == "No MCP servers configured"


def test_file_operations(tmp_path):
    dispatcher = make_dispatcher(ignore_files=["*.log"])
    target = tmp_path / "src" / "app.py"

    async def scenario():
        await dispatcher.execute({"type": "writeToFile", "path": str(target), "content": "x = 1\n"})
        await dispatcher.execute(
            {
                "type": "applyDiffEdit",
                "path": str(target),
                "originalText": "x = 1",
                "updatedText": "x = 2",
            }
        )
        await dispatcher.execute(
            {
                "type": "copyFile",
                "source": str(target),
                "destination": str(tmp_path / "backup" / "app.py"),
            }
        )
        (tmp_path / "debug.log").write_text("noise")
        return (
            await dispatcher.execute({"type": "readFiles", "paths": [str(target)]}),
            await dispatcher.execute({"type": "listFiles", "path": str(tmp_path)}),
        )

    content, listing = asyncio.run(scenario())

    assert content == "x = 2\n"
    assert listing.startswith("Directory Structure:")
    assert "app.py" in listing
    assert "backup/" in listing
    assert "debug.log" not in listing


def test_call_tool_normalizes_errors(tmp_path):
    call = ToolCall(
        id="call-2",
        name="applyDiffEdit",
        arguments={
            "path": str(tmp_path / "missing.txt"),
            "originalText": "a",
            "updatedText": "b",
        },
    )

    result = asyncio.run(make_dispatcher().call_tool(call))

    payload = json.loads(result.result)
    assert result.id == "call-2"
    assert payload["success"] is False
    assert payload["name"] == "applyDiffEdit"


def test_think_returns_the_thought():
    call = ToolCall(id="call-3", name="think", arguments='{"thought": "plan first"}')

    result = asyncio.run(make_dispatcher().call_tool(call))

    assert result.result == "plan first"


def test_command_failure_keeps_the_captured_output(tmp_path):
    dispatcher = make_dispatcher()
    dispatcher.command_service.execute_timeout = 0.5
    call = ToolCall(
        id="call-4",
        name="executeCommand",
        arguments={"command": "echo \x1b[31mpartial\x1b[0m; sleep 2", "cwd": str(tmp_path)},
    )

    result = asyncio.run(dispatcher.call_tool(call))

    payload = json.loads(result.result)
    assert payload["success"] is False
    assert payload["error"] == "Command timed out"
    assert payload["stdout"] == "partial\n"
    assert payload["exit_code"] is None


class FakeWeb:
    def __init__(self):
        self.calls = []

    async def fetch_website(self, url, options=None):
        self.calls.append((url, options))
        return f"page {url}"


def test_fetch_website_is_routed_to_the_web_tools():
    web = FakeWeb()
    dispatcher = ToolDispatcher(AppSettings(), web=web)

    result = asyncio.run(
        dispatcher.execute(
            {"type": "fetchWebsite", "url": "https://example.com", "options": {"chunkIndex": 2}}
        )
    )

    assert result == "page https://example.com"
    assert web.calls == [("https://example.com", {"chunkIndex": 2})]
