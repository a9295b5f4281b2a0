import time
from typing import Any, Dict, List, Optional

import pydantic
from pydantic import Field


class Event(pydantic.BaseModel):
    id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)


class ToolCall(Event):
    id: str
    name: str
    arguments: str | dict


class ToolCallResult(Event):
    id: str
    name: Optional[str] = None
    result: str | dict | list[dict]


class ProcessInfo(pydantic.BaseModel):
    pid: int
    command: str
    detached: bool = True


class RunningProcess(pydantic.BaseModel):
    pid: int
    command: str
    timestamp: float


class CommandExecutionResult(pydantic.BaseModel):
    stdout: str
    stderr: str
    exit_code: int
    process_info: ProcessInfo
    requires_input: bool = False
    prompt: Optional[str] = None


class McpToolResult(pydantic.BaseModel):
    found: bool
    success: bool
    name: str
    message: str
    error: Optional[str] = None
    result: Any = None


class ConnectionTestDetails(pydantic.BaseModel):
    tool_count: Optional[int] = None
    tool_names: Optional[List[str]] = None
    startup_time_ms: Optional[int] = None
    error: Optional[str] = None
    error_details: Optional[str] = None


class ConnectionTestResult(pydantic.BaseModel):
    success: bool
    message: str
    details: Optional[ConnectionTestDetails] = None


class McpServerSpec(pydantic.BaseModel):
    command: str = Field(min_length=1)
    args: List[str]
    env: Dict[str, str] = Field(default_factory=dict)


class McpServersSchema(pydantic.BaseModel):
    mcpServers: Dict[str, McpServerSpec]
