from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
from enum import Enum
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
STREAM_LIMIT = 2**16
# Time allowed for output already in the pipes to drain once the shell exits
EXIT_DRAIN_SECONDS = 0.2


class SessionState(str, Enum):
    SPAWNING = "spawning"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    SERVER_READY = "server_ready"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED)


class _ExitAwareProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that also flags the moment the child exits.

    Background jobs started by the shell can keep the pipes open long after
    the shell itself is gone, so pipe EOF does not mean exit.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited = asyncio.Event()

    def process_exited(self) -> None:
        super().process_exited()
        self.exited.set()


class OutputListener(Protocol):
    def on_stdout(self, session: "ProcessSession", chunk: str) -> None: ...

    def on_stderr(self, session: "ProcessSession", chunk: str) -> None: ...

    def on_exit(self, session: "ProcessSession", code: int) -> None: ...

    def detach(self) -> None: ...


class ProcessSession:
    """One spawned shell process and everything it has printed so far.

    Output is read continuously by background tasks for the whole life of
    the process, even after a caller has been answered, so the pipes never
    fill up. Each read is appended to the cumulative buffers first and then
    handed to the currently attached listener, if any. Attaching a new
    listener detaches the previous one.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: str,
        exited: asyncio.Event,
    ) -> None:
        self.process = process
        self._process_exited = exited
        self.pid: int = process.pid
        self.command = command
        self.timestamp = time.time()
        self.state = SessionState.SPAWNING
        self.has_error = False
        self.stdout = ""
        self.stderr = ""
        self.exit_code: Optional[int] = None
        self._listener: Optional[OutputListener] = None
        self._exit_callbacks: List[Callable[["ProcessSession"], None]] = []
        self._tasks: List[asyncio.Task] = []
        self._exited = asyncio.Event()

    @classmethod
    async def spawn(cls, shell: str, command: str, cwd: str) -> "ProcessSession":
        # Own session => own process group, so the whole tree can be signalled.
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.subprocess_exec(
            lambda: _ExitAwareProtocol(limit=STREAM_LIMIT, loop=loop),
            shell,
            "-ic",
            command,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        process = asyncio.subprocess.Process(transport, protocol, loop)
        session = cls(process, command, protocol.exited)
        logger.info("Spawned pid=%s shell=%s command=%s", session.pid, shell, command)
        return session

    @property
    def is_running(self) -> bool:
        return self.exit_code is None and not self.state.is_terminal

    def attach(self, listener: OutputListener) -> None:
        previous, self._listener = self._listener, listener
        if previous is not None and previous is not listener:
            previous.detach()

    def on_exit(self, callback: Callable[["ProcessSession"], None]) -> None:
        self._exit_callbacks.append(callback)

    def start(self) -> None:
        self.state = SessionState.RUNNING
        self._tasks.append(asyncio.create_task(self._watch()))

    async def _watch(self) -> None:
        pumps = [
            asyncio.create_task(self._pump(self.process.stdout, "stdout")),
            asyncio.create_task(self._pump(self.process.stderr, "stderr")),
        ]
        self._tasks.extend(pumps)
        await self._process_exited.wait()
        _, pending = await asyncio.wait(pumps, timeout=EXIT_DRAIN_SECONDS)
        if pending:
            # Pumps keep reading whatever the background jobs still print
            logger.info("Process pid=%s exited with its output pipes still open", self.pid)

        code = self.process.returncode
        self.exit_code = code
        logger.info("Process pid=%s exited with code %s", self.pid, code)
        if self._listener is not None:
            self._listener.on_exit(self, code)
        if not self.state.is_terminal:
            self.state = SessionState.COMPLETED if code == 0 else SessionState.FAILED
        self._exited.set()
        for callback in self._exit_callbacks:
            callback(self)

    async def _pump(self, stream: Optional[asyncio.StreamReader], name: str) -> None:
        if stream is None:
            return
        # A multi-byte character may be split across two reads
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            chunk = decoder.decode(data, final=not data)
            if chunk:
                self._append(name, chunk)
            if not data:
                break

    def _append(self, name: str, chunk: str) -> None:
        if name == "stdout":
            self.stdout += chunk
            if self._listener is not None:
                self._listener.on_stdout(self, chunk)
        else:
            self.stderr += chunk
            if self._listener is not None:
                self._listener.on_stderr(self, chunk)

    async def write(self, text: str) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            raise BrokenPipeError(f"stdin of process {self.pid} is closed")
        stdin.write(text.encode())
        await stdin.drain()

    def kill_group(self, sig: signal.Signals = signal.SIGTERM) -> None:
        os.killpg(self.pid, sig)

    async def wait_closed(self, timeout: Optional[float] = None) -> Optional[int]:
        await asyncio.wait_for(self._exited.wait(), timeout)
        return self.exit_code
