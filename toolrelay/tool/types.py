from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mcp import StdioServerParameters

from toolrelay.constants import DEFAULT_SHELL, MCP_TOOL_PREFIX


@dataclass(frozen=True)
class ServerConfig:
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    description: str = ""


@dataclass
class ResolvedServer:
    name: str
    params: StdioServerParameters


@dataclass
class ToolDefinition:
    name: str
    description: str
    schema: Dict[str, Any]


@dataclass(frozen=True)
class CommandPatternConfig:
    pattern: str
    description: str = ""


@dataclass
class CommandConfig:
    allowed_commands: List[CommandPatternConfig] = field(default_factory=list)
    shell: str = DEFAULT_SHELL


@dataclass
class AgentConfig:
    id: str
    name: str = ""
    allowed_commands: List[CommandPatternConfig] = field(default_factory=list)
    mcp_servers: List[ServerConfig] = field(default_factory=list)


@dataclass
class AppSettings:
    shell: str = DEFAULT_SHELL
    selected_agent_id: Optional[str] = None
    ignore_files: List[str] = field(default_factory=list)
    agents: List[AgentConfig] = field(default_factory=list)

    def find_agent(self, agent_id: Optional[str]) -> Optional[AgentConfig]:
        if not agent_id:
            return None
        return next((a for a in self.agents if a.id == agent_id), None)

    @property
    def selected_agent(self) -> Optional[AgentConfig]:
        return self.find_agent(self.selected_agent_id)


def is_mcp_tool(tool_name: str) -> bool:
    return tool_name.startswith(MCP_TOOL_PREFIX)


def get_original_mcp_tool_name(tool_name: str) -> str:
    if is_mcp_tool(tool_name):
        return tool_name[len(MCP_TOOL_PREFIX) :]
    return tool_name
