from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from toolrelay.command.service import CommandService
from toolrelay.errors import CommandError, InvalidToolInputError, UnknownToolError

from .filesystem import FileSystemTools
from .model import CommandExecutionResult, ToolCall, ToolCallResult
from .registry import ToolServerRegistry
from .types import (
    AppSettings,
    CommandConfig,
    ServerConfig,
    get_original_mcp_tool_name,
    is_mcp_tool,
)
from .utils.text import strip_ansi, truncate_middle
from .web import WebTools

logger = logging.getLogger(__name__)


def _command_payload(result: CommandExecutionResult) -> Dict[str, Any]:
    payload = result.model_dump(exclude_none=True)
    payload["stdout"] = truncate_middle(strip_ansi(result.stdout))
    payload["stderr"] = truncate_middle(strip_ansi(result.stderr))
    if result.requires_input:
        message = f"Process {result.process_info.pid} is waiting for input"
    else:
        message = "Command executed"
    return {
        "name": "executeCommand",
        "success": True,
        "message": message,
        "result": payload,
    }


def _error_payload(name: str, error: Exception) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"success": False, "name": name, "error": str(error)}
    if isinstance(error, CommandError):
        payload["stdout"] = truncate_middle(strip_ansi(error.stdout))
        payload["stderr"] = truncate_middle(strip_ansi(error.stderr))
        payload["exit_code"] = error.exit_code
    return payload


class ToolDispatcher:
    """Routes a model's tool request to the backend that serves it.

    ``mcp_``-prefixed names go to the selected agent's MCP servers, shell
    execution goes to the command service, ``fetchWebsite`` goes out over
    HTTP and the rest are local file operations. The registry and the
    command service are long-lived and shared by every call.
    """

    def __init__(
        self,
        settings: AppSettings,
        *,
        registry: Optional[ToolServerRegistry] = None,
        command_service: Optional[CommandService] = None,
        filesystem: Optional[FileSystemTools] = None,
        web: Optional[WebTools] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry or ToolServerRegistry()
        self.command_service = command_service or CommandService(self._command_config())
        self.filesystem = filesystem or FileSystemTools()
        self.web = web or WebTools()

    def _mcp_servers(self) -> List[ServerConfig]:
        agent = self.settings.selected_agent
        if agent is None:
            return []
        if not agent.mcp_servers:
            logger.warning("Agent %s has no MCP servers configured", agent.id)
        return agent.mcp_servers

    def _command_config(self) -> CommandConfig:
        agent = self.settings.selected_agent
        return CommandConfig(
            allowed_commands=list(agent.allowed_commands) if agent else [],
            shell=self.settings.shell,
        )

    async def get_tool_specs(self) -> List[Dict[str, Any]]:
        return await self.registry.get_tool_specs(self._mcp_servers())

    async def execute(self, tool_input: Dict[str, Any]) -> str | Dict[str, Any]:
        tool_type = tool_input.get("type")
        logger.info("Executing tool: %s", tool_type)

        if isinstance(tool_type, str) and is_mcp_tool(tool_type):
            arguments = {k: v for k, v in tool_input.items() if k != "type"}
            result = await self.registry.invoke(
                get_original_mcp_tool_name(tool_type), arguments, self._mcp_servers()
            )
            return result.model_dump()

        fs = self.filesystem
        match tool_type:
            case "createFolder":
                return fs.create_folder(tool_input["path"])
            case "readFiles":
                return fs.read_files(tool_input["paths"], tool_input.get("options"))
            case "writeToFile":
                return fs.write_to_file(tool_input["path"], tool_input["content"])
            case "applyDiffEdit":
                return fs.apply_diff_edit(
                    tool_input["path"], tool_input["originalText"], tool_input["updatedText"]
                )
            case "listFiles":
                options = dict(tool_input.get("options") or {})
                options.setdefault("ignoreFiles", self.settings.ignore_files)
                return fs.list_files(tool_input["path"], options)
            case "moveFile":
                return fs.move_file(tool_input["source"], tool_input["destination"])
            case "copyFile":
                return fs.copy_file(tool_input["source"], tool_input["destination"])
            case "fetchWebsite":
                return await self.web.fetch_website(tool_input["url"], tool_input.get("options"))
            case "think":
                return fs.think(tool_input.get("thought", ""))
            case "executeCommand":
                return await self._execute_command(tool_input)
            case _:
                raise UnknownToolError(f"Unknown tool type: {tool_type}")

    async def _execute_command(self, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        # The allow-list follows whichever agent is selected right now
        self.command_service.update_config(self._command_config())

        if tool_input.get("pid") and tool_input.get("stdin"):
            result = await self.command_service.send_input(
                int(tool_input["pid"]), str(tool_input["stdin"])
            )
        elif tool_input.get("command") and tool_input.get("cwd"):
            result = await self.command_service.execute_command(
                str(tool_input["command"]), str(tool_input["cwd"])
            )
        else:
            raise InvalidToolInputError(
                "Invalid input format for executeCommand: "
                "requires either (command, cwd) or (pid, stdin)"
            )
        return _command_payload(result)

    async def call_tool(self, tool_call: ToolCall) -> ToolCallResult:
        args = tool_call.arguments
        try:
            if isinstance(args, str):
                args = json.loads(args or "{}")
        except json.JSONDecodeError:
            args = {}

        try:
            result = await self.execute({**(args or {}), "type": tool_call.name})
        except Exception as e:
            logger.exception("Error executing tool: %s", tool_call.name)
            content = json.dumps(
                _error_payload(tool_call.name, e), ensure_ascii=False, default=str
            )
            return ToolCallResult(id=tool_call.id, name=tool_call.name, result=content)

        if not isinstance(result, str):
            result = json.dumps(result, ensure_ascii=False, default=str)
        return ToolCallResult(id=tool_call.id, name=tool_call.name, result=result)

    async def close(self) -> None:
        await self.command_service.stop_all()
        await self.registry.cleanup()
