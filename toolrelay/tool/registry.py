from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import pydantic

from toolrelay.constants import MCP_TOOL_PREFIX
from toolrelay.errors import InvalidServerConfigError

from .config_loader import load_settings_yaml
from .mcp_client import McpClient, error_message
from .model import (
    ConnectionTestDetails,
    ConnectionTestResult,
    McpServersSchema,
    McpToolResult,
)
from .types import ServerConfig, ToolDefinition

logger = logging.getLogger(__name__)

EMPTY_CONFIG_HASH = "empty"

ClientFactory = Callable[[ServerConfig], Awaitable[Any]]


def generate_config_hash(servers: Sequence[ServerConfig]) -> str:
    """Stable identity of a server set, independent of order and description."""
    if not servers:
        return EMPTY_CONFIG_HASH
    essential = []
    for server in sorted(servers, key=lambda s: s.name):
        entry: Dict[str, Any] = {
            "name": server.name,
            "command": server.command,
            "args": list(server.args or []),
        }
        if server.env:
            entry["env"] = dict(server.env)
        essential.append(entry)
    payload = json.dumps(essential, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def analyze_server_error(message: str) -> str:
    lower_error = message.lower()

    if (
        "enoent" in lower_error
        or "command not found" in lower_error
        or "no such file or directory" in lower_error
    ):
        return "Command not found. Please make sure the command is installed and the path is correct."

    if "timeout" in lower_error or "timed out" in lower_error:
        return "The response from the server timed out. Please check if the server is running properly."

    if "permission denied" in lower_error or "eacces" in lower_error:
        return "A permission error occurred. Please make sure you have the execution permissions."

    if "port" in lower_error and "use" in lower_error:
        return "The port is already in use. Please make sure that no other process is using the same port."

    return "Please make sure your command and arguments are correct."


def to_openai_tool(tool: ToolDefinition, server_name: str) -> Dict[str, Any]:
    schema = tool.schema or {}
    # Ensure parameters is an object schema
    if not isinstance(schema, dict) or schema.get("type") != "object":
        parameters = {
            "type": "object",
            "properties": {
                "input": schema if isinstance(schema, dict) else {"type": "string"}
            },
            "required": ["input"],
            "additionalProperties": True,
        }
    else:
        parameters = schema

    return {
        "type": "function",
        "function": {
            "name": f"{MCP_TOOL_PREFIX}{tool.name}",
            "description": (tool.description or f"{server_name}.{tool.name}")[:512],
            "parameters": parameters,
        },
    }


@dataclass
class ServerConnection:
    name: str
    client: Any


@dataclass
class RegistrySnapshot:
    connections: List[ServerConnection] = field(default_factory=list)
    config_hash: Optional[str] = EMPTY_CONFIG_HASH
    config_count: int = 0
    config_names: List[str] = field(default_factory=list)


class ToolServerRegistry:
    """Keeps the MCP servers of the current agent running.

    One instance lives for the whole application session. Every dispatch
    calls ``ensure_active`` with the agent's server list; the servers are
    only restarted when that list's identity changes. Activations are
    serialized through a single in-flight task.
    """

    def __init__(self, client_factory: ClientFactory | None = None) -> None:
        self.client_factory: ClientFactory = client_factory or McpClient.from_config
        self.snapshot = RegistrySnapshot()
        self._in_flight: Optional[asyncio.Task] = None
        self.activation_count = 0

    @property
    def connections(self) -> List[ServerConnection]:
        return self.snapshot.connections

    def has_config_changed(self, servers: Sequence[ServerConfig]) -> bool:
        snapshot = self.snapshot
        if len(servers) != snapshot.config_count:
            logger.info(
                "MCP server count changed: %s -> %s", snapshot.config_count, len(servers)
            )
            return True
        if not servers:
            return False

        names = sorted(s.name for s in servers)
        if names != snapshot.config_names:
            logger.info("MCP server names changed")
            return True
        return generate_config_hash(servers) != snapshot.config_hash

    def _update_config_cache(self, servers: Sequence[ServerConfig]) -> None:
        self.snapshot.config_hash = generate_config_hash(servers)
        self.snapshot.config_count = len(servers)
        self.snapshot.config_names = sorted(s.name for s in servers)
        logger.info("Updated MCP config cache with %s server(s)", len(servers))

    async def ensure_active(self, servers: Sequence[ServerConfig]) -> None:
        servers = list(servers or [])
        if not self.has_config_changed(servers):
            logger.debug("MCP configuration unchanged, skipping initialization")
            return

        while self._in_flight is not None:
            logger.info("MCP initialization already in progress, waiting...")
            try:
                await asyncio.shield(self._in_flight)
            except Exception as e:
                logger.info("Previous MCP initialization failed: %s", e)
            if not self.has_config_changed(servers):
                logger.info("MCP already initialized with same configuration during wait")
                return

        logger.info("Starting MCP initialization with %s server(s)...", len(servers))
        task = asyncio.ensure_future(self._activate(servers))
        self._in_flight = task
        try:
            await task
        except Exception:
            logger.exception("Error during MCP initialization")
            # Force the next call to start over from scratch
            self._update_config_cache([])
            raise
        finally:
            if self._in_flight is task:
                self._in_flight = None

    async def _activate(self, servers: List[ServerConfig]) -> None:
        self.activation_count += 1
        await self._cleanup_connections()

        if not servers:
            logger.info("No MCP servers configured for this agent")
            self._update_config_cache(servers)
            return

        self._validate(servers)

        logger.info("Creating %s new MCP clients...", len(servers))
        launched = await asyncio.gather(*(self._launch(s) for s in servers))
        self.snapshot.connections = [c for c in launched if c is not None]

        self._update_config_cache(servers)
        logger.info(
            "MCP initialization complete with %s server(s)", len(self.snapshot.connections)
        )

    @staticmethod
    def _validate(servers: List[ServerConfig]) -> None:
        config_data = {
            "mcpServers": {
                s.name: {"command": s.command, "args": s.args, "env": s.env or {}}
                for s in servers
            }
        }
        try:
            McpServersSchema.model_validate(config_data)
        except pydantic.ValidationError as e:
            logger.error("Invalid MCP server configuration: %s", e)
            raise InvalidServerConfigError("Invalid MCP server configuration") from e

    async def _launch(self, server: ServerConfig) -> Optional[ServerConnection]:
        try:
            logger.info("Starting MCP server: %s", server.name)
            client = await self.client_factory(server)
            return ServerConnection(name=server.name, client=client)
        except Exception:
            logger.exception(
                "MCP server %s failed to start. Ignoring the server...", server.name
            )
            return None

    async def _cleanup_connections(self) -> None:
        connections, self.snapshot.connections = self.snapshot.connections, []
        if connections:
            logger.info("Cleaning up %s existing MCP clients...", len(connections))

        async def _cleanup(connection: ServerConnection) -> None:
            try:
                await connection.client.cleanup()
            except Exception:
                logger.exception("Failed to clean up MCP client %s", connection.name)

        await asyncio.gather(*(_cleanup(c) for c in connections))

    async def cleanup(self) -> None:
        if self._in_flight is not None:
            try:
                await asyncio.shield(self._in_flight)
            except Exception as e:
                logger.info("Pending MCP initialization failed: %s", e)
        await self._cleanup_connections()
        self.snapshot = RegistrySnapshot()

    async def get_tool_specs(self, servers: Sequence[ServerConfig] | None) -> List[Dict[str, Any]]:
        if not servers:
            return []
        await self.ensure_active(servers)

        specs: List[Dict[str, Any]] = []
        for connection in self.snapshot.connections:
            for tool in connection.client.tools:
                # Deep copy so callers never share state with the live client
                specs.append(copy.deepcopy(to_openai_tool(tool, connection.name)))
        return specs

    async def list_tools(self, servers: Sequence[ServerConfig] | None) -> List[Dict[str, Any]]:
        if not servers:
            return []
        await self.ensure_active(servers)
        return [
            {
                "name": f"{connection.name}:{tool.name}",
                "description": tool.description,
                "schema": copy.deepcopy(tool.schema),
            }
            for connection in self.snapshot.connections
            for tool in connection.client.tools
        ]

    async def invoke(
        self,
        tool_name: str,
        arguments: Dict[str, Any],
        servers: Sequence[ServerConfig] | None,
    ) -> McpToolResult:
        prefixed_name = f"{MCP_TOOL_PREFIX}{tool_name}"
        if not servers:
            return McpToolResult(
                found=False,
                success=False,
                name=prefixed_name,
                error="No MCP servers configured",
                message=(
                    "This agent does not have any MCP servers configured. "
                    "Please add MCP server configuration in agent settings."
                ),
            )

        await self.ensure_active(servers)

        connection = next(
            (
                c
                for c in self.snapshot.connections
                if any(tool.name == tool_name for tool in c.client.tools)
            ),
            None,
        )
        if connection is None:
            return McpToolResult(
                found=False,
                success=False,
                name=prefixed_name,
                error=f"MCP tool {tool_name} not found",
                message=f'No MCP server provides a tool named "{tool_name}"',
            )

        try:
            result = await connection.client.call_tool(tool_name, dict(arguments or {}))
        except Exception as e:
            logger.exception("Tool call failed for %s.%s", connection.name, tool_name)
            message = error_message(e)
            return McpToolResult(
                found=True,
                success=False,
                name=prefixed_name,
                error=message,
                message=f'Error executing MCP tool "{tool_name}": {message}',
            )

        return McpToolResult(
            found=True,
            success=True,
            name=prefixed_name,
            message="MCP tool execution successful",
            result=result,
        )

    async def test_connection(self, server: ServerConfig) -> ConnectionTestResult:
        logger.info("Testing connection to MCP server: %s", server.name)
        start_time = time.monotonic()
        try:
            client = await self.client_factory(server)
            try:
                tool_names = [t.name for t in client.tools if t.name]
            finally:
                await client.cleanup()
        except Exception as e:
            message = error_message(e)
            return ConnectionTestResult(
                success=False,
                message=f'Failed to connect to MCP server "{server.name}"',
                details=ConnectionTestDetails(
                    error=message, error_details=analyze_server_error(message)
                ),
            )

        return ConnectionTestResult(
            success=True,
            message=f'Successfully connected to MCP server "{server.name}"',
            details=ConnectionTestDetails(
                tool_count=len(tool_names),
                tool_names=tool_names,
                startup_time_ms=int((time.monotonic() - start_time) * 1000),
            ),
        )

    async def test_all_connections(
        self, servers: Sequence[ServerConfig] | None
    ) -> Dict[str, ConnectionTestResult]:
        results: Dict[str, ConnectionTestResult] = {}
        # One server at a time, like the settings screen shows them
        for server in servers or []:
            results[server.name] = await self.test_connection(server)
        return results


async def main(config_path: str | None = None):
    settings = load_settings_yaml(config_path)
    registry = ToolServerRegistry()
    for agent in settings.agents:
        if not agent.mcp_servers:
            continue
        print(f"Agent {agent.id}:")
        results = await registry.test_all_connections(agent.mcp_servers)
        for name, result in results.items():
            print(f"  {name}: {result.model_dump_json(exclude_none=True)}")


if __name__ == "__main__":
    arg = sys.argv[1] if len(sys.argv) > 1 else None
    asyncio.run(main(arg))
