from pathlib import Path

# Paths relative to the toolrelay package directory
PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_SETTINGS_PATH = PACKAGE_DIR / "settings.yaml"

DEFAULT_SHELL = "/bin/bash"

MCP_TOOL_PREFIX = "mcp_"

COMMAND_TIMEOUT_SECONDS = 60 * 5
INPUT_TIMEOUT_SECONDS = 5
MCP_STARTUP_TIMEOUT_SECONDS = 60
MCP_CALL_TIMEOUT_SECONDS = 900
