from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path
from typing import Any, Dict, List

import yaml
from mcp import StdioServerParameters

from toolrelay.constants import DEFAULT_SETTINGS_PATH, DEFAULT_SHELL

from .types import (
    AgentConfig,
    AppSettings,
    CommandPatternConfig,
    ResolvedServer,
    ServerConfig,
)

COMMON_BIN_DIRS = [
    "/usr/local/bin",
    "/opt/homebrew/bin",
    os.path.join(os.path.expanduser("~"), ".npm-global", "bin"),
    os.path.join(os.path.expanduser("~"), "bin"),
    os.path.join(os.path.expanduser("~"), ".local", "bin"),
]


def _default_config_path() -> str:
    explicit = os.getenv("TOOLRELAY_CONFIG_PATH")
    if explicit:
        return explicit
    return str(DEFAULT_SETTINGS_PATH)


def _interpolate_env(value: str) -> str:
    # format: ${env:VAR}
    if isinstance(value, str) and value.startswith("${env:") and value.endswith("}"):
        var_name = value[len("${env:") : -1]
        return os.environ.get(var_name, value)
    return value


def parse_server_entry(item: Any, where: str) -> ServerConfig:
    if not isinstance(item, dict):
        raise ValueError(f"Server entry {where} must be a mapping")

    name = item.get("name")
    command = item.get("command")
    args = item.get("args", [])
    env = item.get("env") or {}

    if not name or not command:
        raise ValueError(f"Server entry {where} requires 'name' and 'command'")
    if not isinstance(args, list):
        raise ValueError(f"'args' for server '{name}' must be a list of strings")
    if not isinstance(env, dict):
        raise ValueError(f"'env' for server '{name}' must be a mapping of strings")

    # Interpolate env placeholders
    interpolated_env: Dict[str, str] = {}
    for k, v in env.items():
        interpolated_env[str(k)] = str(_interpolate_env(v))

    return ServerConfig(
        name=str(name),
        command=str(command),
        args=[str(a) for a in args],
        env=interpolated_env,
        description=str(item.get("description") or ""),
    )


def parse_command_patterns(items: Any, where: str) -> List[CommandPatternConfig]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError(f"'allowedCommands' {where} must be a list")
    patterns: List[CommandPatternConfig] = []
    for i, item in enumerate(items):
        if isinstance(item, str):
            item = {"pattern": item}
        if not isinstance(item, dict) or not item.get("pattern"):
            raise ValueError(f"Allowed command at index {i} {where} requires 'pattern'")
        patterns.append(
            CommandPatternConfig(
                pattern=str(item["pattern"]),
                description=str(item.get("description") or ""),
            )
        )
    return patterns


def load_settings_yaml(config_path: str | Path | None = None) -> AppSettings:
    path = str(config_path or _default_config_path())
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping object")

    agents_data = data.get("agents", [])
    if not isinstance(agents_data, list):
        raise ValueError("Config 'agents' must be a list")

    agents: List[AgentConfig] = []
    for i, item in enumerate(agents_data):
        if not isinstance(item, dict):
            raise ValueError(f"Agent entry at index {i} must be a mapping")
        agent_id = item.get("id")
        if not agent_id:
            raise ValueError(f"Agent entry at index {i} requires 'id'")

        servers = item.get("mcpServers") or []
        if not isinstance(servers, list):
            raise ValueError(f"'mcpServers' for agent '{agent_id}' must be a list")

        agents.append(
            AgentConfig(
                id=str(agent_id),
                name=str(item.get("name") or agent_id),
                allowed_commands=parse_command_patterns(
                    item.get("allowedCommands"), f"for agent '{agent_id}'"
                ),
                mcp_servers=[
                    parse_server_entry(s, f"at index {j} for agent '{agent_id}'")
                    for j, s in enumerate(servers)
                ],
            )
        )

    ignore_files = data.get("ignoreFiles") or []
    if not isinstance(ignore_files, list):
        raise ValueError("Config 'ignoreFiles' must be a list")

    return AppSettings(
        shell=str(data.get("shell") or DEFAULT_SHELL),
        selected_agent_id=data.get("selectedAgentId"),
        ignore_files=[str(p) for p in ignore_files],
        agents=agents,
    )


def resolve_command(command: str) -> str:
    """Best-effort lookup of a launch command's executable path.

    Desktop launches often inherit a minimal PATH, so common install
    locations are checked before PATH. Falls back to the bare name and lets
    the launch itself report the failure.
    """
    # Run python servers inside the current interpreter's environment
    if command in ("python", "python3"):
        return sys.executable

    if os.path.isabs(command) and os.path.exists(command):
        return command

    for directory in COMMON_BIN_DIRS:
        full_path = os.path.join(directory, command)
        if os.path.exists(full_path):
            return full_path

    found = shutil.which(command)
    if found:
        return found
    return command


def build_stdio_params(server: ServerConfig) -> StdioServerParameters:
    # Merge the current process environment with per-server overrides so
    # child MCP processes inherit all necessary variables (API keys, etc.).
    merged_env = dict(os.environ)
    if server.env:
        merged_env.update(server.env)
    return StdioServerParameters(
        command=resolve_command(server.command), args=list(server.args), env=merged_env
    )


def resolve_server(server: ServerConfig) -> ResolvedServer:
    return ResolvedServer(name=server.name, params=build_stdio_params(server))
