from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from toolrelay.tool.types import CommandPatternConfig

WILDCARD = "*"


@dataclass
class CommandPattern:
    command: str
    args: List[str]
    wildcard: bool


def parse_command_pattern(command_str: str) -> CommandPattern:
    # Split on single spaces: "npm  install" is not "npm install".
    parts = command_str.split(" ")
    return CommandPattern(
        command=parts[0],
        args=parts[1:],
        wildcard=any(part == WILDCARD for part in parts),
    )


def is_command_allowed(
    command_to_execute: str,
    allowed_commands: Sequence[CommandPatternConfig] | None,
) -> bool:
    """Return True when some allow-list pattern authorizes the command line.

    A pattern containing a ``*`` token authorizes any arguments for its
    command. Without a wildcard the arguments must match one to one. An
    empty allow-list denies everything.
    """
    requested = parse_command_pattern(command_to_execute)

    for allowed in allowed_commands or []:
        pattern = parse_command_pattern(allowed.pattern)
        if pattern.command != requested.command:
            continue
        if pattern.wildcard:
            return True
        if len(pattern.args) != len(requested.args):
            continue
        if all(
            arg == WILDCARD or arg == requested.args[i]
            for i, arg in enumerate(pattern.args)
        ):
            return True
    return False
