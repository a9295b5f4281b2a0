from __future__ import annotations

from typing import Optional


class CommandError(RuntimeError):
    """Base class for shell command failures.

    Carries whatever output the process produced before failing so callers
    (and ultimately the model) can diagnose it.
    """

    def __init__(
        self,
        message: str,
        *,
        stdout: str = "",
        stderr: str = "",
        exit_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code


class CommandNotAllowedError(CommandError):
    pass


class CommandLaunchError(CommandError):
    pass


class CommandExecutionError(CommandError):
    pass


class CommandTimeoutError(CommandError):
    pass


class ProcessNotFoundError(CommandError):
    pass


class ProcessStopError(CommandError):
    pass


class InvalidServerConfigError(ValueError):
    pass


class UnknownToolError(ValueError):
    pass


class InvalidToolInputError(ValueError):
    pass
