"""Heuristics that read a process's accumulated output.

Every function here is pure and is always handed the cumulative text seen
so far, so a prompt split across two reads is still recognised.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Pattern


@dataclass(frozen=True)
class InputProbe:
    name: str
    pattern: Pattern[str]
    extract: Callable[[re.Match, str], str]


@dataclass(frozen=True)
class WaitingForInput:
    is_waiting: bool
    prompt: Optional[str] = None


# Order matters: the first probe that matches supplies the prompt.
INPUT_PROBES: List[InputProbe] = [
    InputProbe(
        name="inquirer-question",
        pattern=re.compile(r"\? (.+\?.*)$"),
        extract=lambda match, line: match.group(1),
    ),
    InputProbe(
        name="label-prompt",
        pattern=re.compile(r"[^:]+: $"),
        extract=lambda match, line: line,
    ),
]

SERVER_READY_KEYWORDS = [
    "listening",
    "ready",
    "started",
    "running",
    "live",
    "compiled successfully",
    "compiled",
    "waiting for file changes",
    "development server running",
]

ERROR_MARKERS = [
    "EADDRINUSE",
    "Error:",
    "error:",
    "ERR!",
    "Cannot find module",
    "command not found",
    "Failed to compile",
    "Syntax error:",
    "TypeError:",
]

CRASH_MARKER = "app crashed"
FILE_WATCH_MARKER = "waiting for file changes"


def last_line(text: str) -> str:
    return text.rsplit("\n", 1)[-1].rstrip("\r")


def detect_waiting_for_input(text: str) -> WaitingForInput:
    line = last_line(text)
    if not line:
        return WaitingForInput(is_waiting=False)
    for probe in INPUT_PROBES:
        match = probe.pattern.search(line)
        if match:
            return WaitingForInput(is_waiting=True, prompt=probe.extract(match, line))
    return WaitingForInput(is_waiting=False)


def detect_server_ready(text: str) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in SERVER_READY_KEYWORDS)


def is_file_watch_idle(text: str) -> bool:
    return FILE_WATCH_MARKER in text


def detect_error(stdout: str, stderr: str) -> bool:
    if any(marker in stdout or marker in stderr for marker in ERROR_MARKERS):
        return True
    # A dev server that crashed but went back to watching has recovered.
    for stream in (stdout, stderr):
        if CRASH_MARKER in stream and not is_file_watch_idle(stream):
            return True
    return False
