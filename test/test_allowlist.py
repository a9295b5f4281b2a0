import pytest

from toolrelay.command.allowlist import is_command_allowed, parse_command_pattern
from toolrelay.tool.types import CommandPatternConfig


def patterns(*values):
    return [CommandPatternConfig(pattern=v, description="test") for v in values]


@pytest.mark.parametrize(
    "command",
    [
        "gh pr view 42",
        "gh pr diff 42 --repo x/y",
        "gh pr comment 1 -F f.md",
        "gh pr",
    ],
)
def test_wildcard_grants_any_arguments(command):
    assert is_command_allowed(command, patterns("gh pr *"))


def test_wildcard_does_not_cross_commands():
    assert not is_command_allowed("git pr view 42", patterns("gh pr *"))


def test_literal_pattern_requires_exact_arguments():
    allowed = patterns("npm install")

    assert is_command_allowed("npm install", allowed)
    assert not is_command_allowed("npm install lodash", allowed)
    assert not is_command_allowed("npm", allowed)
    assert not is_command_allowed("npm ci", allowed)


def test_empty_allow_list_denies_everything():
    assert not is_command_allowed("ls", [])
    assert not is_command_allowed("ls", None)


def test_first_matching_pattern_wins():
    allowed = patterns("npm install", "npm run build", "ls *")

    assert is_command_allowed("npm run build", allowed)
    assert is_command_allowed("ls -la /tmp", allowed)
    assert not is_command_allowed("npm run test", allowed)


def test_parse_splits_on_single_spaces():
    parsed = parse_command_pattern("gh pr *")

    assert parsed.command == "gh"
    assert parsed.args == ["pr", "*"]
    assert parsed.wildcard is True
    assert parse_command_pattern("npm  install").args == ["", "install"]
