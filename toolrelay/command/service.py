from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from toolrelay.command.allowlist import is_command_allowed
from toolrelay.command.output_classifier import (
    detect_error,
    detect_server_ready,
    detect_waiting_for_input,
    is_file_watch_idle,
)
from toolrelay.command.process_session import ProcessSession, SessionState
from toolrelay.constants import COMMAND_TIMEOUT_SECONDS, INPUT_TIMEOUT_SECONDS
from toolrelay.errors import (
    CommandError,
    CommandExecutionError,
    CommandLaunchError,
    CommandNotAllowedError,
    CommandTimeoutError,
    ProcessNotFoundError,
    ProcessStopError,
)
from toolrelay.tool.model import CommandExecutionResult, ProcessInfo, RunningProcess
from toolrelay.tool.types import CommandConfig, CommandPatternConfig

logger = logging.getLogger(__name__)


class _OutputWatcher:
    """Resolves one caller's future from a session's output events.

    ``mode`` is ``"execute"`` for the initial run and ``"input"`` for a
    follow-up stdin round trip. The two differ only in timeout handling and
    in whether a failure purges the session immediately.
    """

    def __init__(
        self,
        session: ProcessSession,
        mode: str,
        timeout: float,
        purge: Callable[[int], None],
    ) -> None:
        self.session = session
        self.mode = mode
        self.purge = purge
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._timer = asyncio.get_running_loop().call_later(timeout, self.on_timeout)

    @property
    def settled(self) -> bool:
        return self.future.done()

    def _result(self, exit_code: int) -> CommandExecutionResult:
        session = self.session
        waiting = detect_waiting_for_input(session.stdout)
        return CommandExecutionResult(
            stdout=session.stdout,
            stderr=session.stderr,
            exit_code=exit_code,
            process_info=ProcessInfo(pid=session.pid, command=session.command),
            requires_input=waiting.is_waiting,
            prompt=waiting.prompt,
        )

    def _fail(self, error: CommandError, purge: bool = True) -> None:
        self._timer.cancel()
        if self.settled:
            # Already answered: the session stays tracked until exit or stop_process
            logger.info(
                "Process pid=%s reported an error after answering: %s",
                self.session.pid,
                error,
            )
            return
        if purge:
            self.session.state = SessionState.FAILED
            self.purge(self.session.pid)
        self.future.set_exception(error)

    def _succeed(self, result: CommandExecutionResult) -> None:
        self._timer.cancel()
        if not self.settled:
            self.future.set_result(result)

    def _error(self, message: str, cls=CommandExecutionError) -> CommandError:
        return cls(
            message,
            stdout=self.session.stdout,
            stderr=self.session.stderr,
            exit_code=self.session.exit_code,
        )

    def _check_progress(self) -> None:
        session = self.session
        waiting = detect_waiting_for_input(session.stdout)
        if waiting.is_waiting:
            session.state = SessionState.WAITING_FOR_INPUT
            self._succeed(self._result(0))
        elif detect_server_ready(session.stdout):
            session.state = SessionState.SERVER_READY
            self._succeed(self._result(0))

    def on_stdout(self, session: ProcessSession, chunk: str) -> None:
        if detect_error(session.stdout, ""):
            session.has_error = True
            self._fail(
                self._error(f"Command failed: \n{session.stdout}\n{session.stderr}")
            )
            return
        if not self.settled:
            self._check_progress()

    def on_stderr(self, session: ProcessSession, chunk: str) -> None:
        if detect_error("", session.stderr):
            session.has_error = True
            self._fail(
                self._error(f"Command failed: \n{session.stdout}\n{session.stderr}")
            )

    def on_exit(self, session: ProcessSession, code: int) -> None:
        if code == 0 and not detect_error(session.stdout, session.stderr):
            session.state = SessionState.COMPLETED
            self._succeed(self._result(code))
        else:
            session.state = SessionState.FAILED
            self._fail(
                self._error(
                    f"Process exited with code {code}\n{session.stdout}\n{session.stderr}"
                )
            )

    def on_timeout(self) -> None:
        if self.settled:
            return
        session = self.session
        # The input round trip keeps the session: the process is still alive.
        purge = self.mode == "execute"
        if session.has_error:
            self._fail(
                self._error(f"Command failed to start: \n{session.stderr}"), purge
            )
        elif detect_server_ready(session.stdout) or is_file_watch_idle(session.stdout):
            session.state = SessionState.SERVER_READY
            self._succeed(self._result(0))
        elif self.mode == "execute":
            self._fail(self._error("Command timed out", CommandTimeoutError), purge)
        else:
            self._fail(
                self._error(
                    "Command timed out waiting for response", CommandTimeoutError
                ),
                purge,
            )

    def abandon(self) -> None:
        self._timer.cancel()
        self.future.cancel()

    def detach(self) -> None:
        self._timer.cancel()
        if not self.settled:
            self.future.set_exception(
                self._error("Output handling was taken over by a later input")
            )


class CommandService:
    """Runs allow-listed shell commands and keeps interactive ones alive.

    A command is answered as soon as it finishes, asks for input, or looks
    like a server that came up; in the latter two cases the process keeps
    running and can be fed with ``send_input`` or ended with ``stop_process``.
    """

    execute_timeout: float = COMMAND_TIMEOUT_SECONDS
    input_timeout: float = INPUT_TIMEOUT_SECONDS

    def __init__(self, config: CommandConfig) -> None:
        self.config = config
        self.sessions: Dict[int, ProcessSession] = {}

    def _purge(self, pid: int) -> None:
        if self.sessions.pop(pid, None) is not None:
            logger.info("Removed process pid=%s from the live table", pid)

    async def execute_command(self, command: str, cwd: str) -> CommandExecutionResult:
        if not is_command_allowed(command, self.config.allowed_commands):
            logger.warning("Rejected command not on the allow-list: %s", command)
            raise CommandNotAllowedError(f"Command not allowed: {command}")

        try:
            session = await ProcessSession.spawn(self.config.shell, command, cwd)
        except OSError as e:
            raise CommandLaunchError(f"Command execution failed: {e}") from e

        self.sessions[session.pid] = session
        session.on_exit(lambda s: self._purge(s.pid))
        watcher = _OutputWatcher(session, "execute", self.execute_timeout, self._purge)
        session.attach(watcher)
        session.start()
        return await watcher.future

    async def send_input(self, pid: int, stdin: str) -> CommandExecutionResult:
        session = self.sessions.get(pid)
        if session is None or not session.is_running:
            raise ProcessNotFoundError(f"No running process found with PID: {pid}")

        watcher = _OutputWatcher(session, "input", self.input_timeout, self._purge)
        session.attach(watcher)
        try:
            await session.write(stdin + "\n")
        except (BrokenPipeError, ConnectionResetError) as e:
            watcher.abandon()
            raise ProcessNotFoundError(
                f"Failed to write to process {pid}: {e}",
                stdout=session.stdout,
                stderr=session.stderr,
            ) from e
        return await watcher.future

    async def stop_process(self, pid: int) -> None:
        session = self.sessions.get(pid)
        if session is None:
            return
        try:
            session.kill_group()
        except ProcessLookupError:
            logger.info("Process group %s already gone", pid)
        except OSError as e:
            raise ProcessStopError(f"Failed to stop process {pid}: {e}") from e
        self._purge(pid)

    async def stop_all(self) -> None:
        for pid in list(self.sessions):
            try:
                await self.stop_process(pid)
            except ProcessStopError:
                logger.exception("Failed to stop process %s", pid)

    def get_running_processes(self) -> List[RunningProcess]:
        return [
            RunningProcess(pid=s.pid, command=s.command, timestamp=s.timestamp)
            for s in self.sessions.values()
        ]

    def get_allowed_commands(self) -> List[CommandPatternConfig]:
        return list(self.config.allowed_commands or [])

    def update_config(self, config: CommandConfig) -> None:
        self.config = config

    def get_session(self, pid: int) -> Optional[ProcessSession]:
        return self.sessions.get(pid)
