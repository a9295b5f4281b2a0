from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from mcp import ClientSession
from mcp.client.stdio import stdio_client

from toolrelay.constants import MCP_CALL_TIMEOUT_SECONDS, MCP_STARTUP_TIMEOUT_SECONDS

from .config_loader import resolve_server
from .types import ResolvedServer, ServerConfig, ToolDefinition


def with_timeout(timeout_seconds: float):
    def decorator(func):
        async def wrapper(*args, **kwargs):
            return await asyncio.wait_for(
                func(*args, **kwargs), timeout=timeout_seconds
            )

        return wrapper

    return decorator


logger = logging.getLogger(__name__)


def error_message(error: BaseException) -> str:
    # anyio task groups wrap the real failure in an exception group
    while isinstance(error, BaseExceptionGroup) and error.exceptions:
        error = error.exceptions[0]
    return str(error) or error.__class__.__name__


class McpClient:
    """A long-lived connection to one stdio MCP server.

    The stdio transport and the client session are entered and exited by a
    single background task, so the connection can be opened by one caller
    and cleaned up by another.
    """

    def __init__(self, server: ResolvedServer) -> None:
        self.name = server.name
        self.params = server.params
        self.tools: List[ToolDefinition] = []
        self.session: Optional[ClientSession] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = asyncio.Event()

    @classmethod
    async def from_config(cls, server: ServerConfig) -> "McpClient":
        client = cls(resolve_server(server))
        await client.start()
        return client

    async def start(self, timeout: float = MCP_STARTUP_TIMEOUT_SECONDS) -> None:
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(ready))
        try:
            await asyncio.wait_for(asyncio.shield(ready), timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            await self.cleanup()
            raise TimeoutError(
                f"Timeout while starting MCP server '{self.name}' after {timeout}s"
            )
        except BaseException:
            await self.cleanup()
            raise

    async def _run(self, ready: asyncio.Future) -> None:
        try:
            async with stdio_client(self.params) as (read, write):
                async with ClientSession(read, write, sampling_callback=None) as session:
                    await session.initialize()
                    tools_response = await session.list_tools()
                    self.tools = [
                        ToolDefinition(
                            name=tool.name,
                            description=tool.description or "",
                            schema=tool.inputSchema,
                        )
                        for tool in tools_response.tools
                    ]
                    self.session = session
                    logger.info(
                        "MCP server %s ready with tools: %s",
                        self.name,
                        [t.name for t in self.tools],
                    )
                    ready.set_result(None)
                    await self._closing.wait()
        except Exception as e:
            if not ready.done():
                ready.set_exception(e)
            else:
                logger.exception("MCP server %s connection failed", self.name)
        finally:
            self.session = None
            if not ready.done():
                ready.cancel()

    @with_timeout(MCP_CALL_TIMEOUT_SECONDS)
    async def call_tool(self, tool_name: str, arguments: Dict[str, Any]) -> List[Dict[str, Any]]:
        if self.session is None:
            raise RuntimeError(f"MCP server '{self.name}' is not connected")
        tool_result = await self.session.call_tool(tool_name, arguments=arguments)
        content = [c.model_dump(exclude_none=True) for c in tool_result.content]
        if tool_result.isError:
            text = " ".join(c.get("text", "") for c in content).strip()
            raise RuntimeError(text or f"MCP tool '{tool_name}' reported an error")
        return content

    async def cleanup(self) -> None:
        self._closing.set()
        if self._task is None:
            return
        task, self._task = self._task, None
        _, pending = await asyncio.wait({task}, timeout=MCP_STARTUP_TIMEOUT_SECONDS)
        if pending:
            logger.warning("MCP server %s did not shut down in time", self.name)
            task.cancel()
