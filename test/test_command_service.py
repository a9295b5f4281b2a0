import asyncio

import pytest

from toolrelay.command.process_session import SessionState
from toolrelay.command.service import CommandService
from toolrelay.errors import (
    CommandExecutionError,
    CommandNotAllowedError,
    CommandTimeoutError,
    ProcessNotFoundError,
)
from toolrelay.tool.types import CommandConfig, CommandPatternConfig

SHELL = "/bin/sh"


def make_service(*patterns: str) -> CommandService:
    return CommandService(
        CommandConfig(
            allowed_commands=[CommandPatternConfig(pattern=p) for p in patterns],
            shell=SHELL,
        )
    )


def test_rejects_command_before_spawning(tmp_path):
    service = make_service("npm install")

    with pytest.raises(CommandNotAllowedError, match="Command not allowed: npm install lodash"):
        asyncio.run(service.execute_command("npm install lodash", str(tmp_path)))
    assert service.get_running_processes() == []


def test_simple_command_completes_and_is_purged(tmp_path):
    service = make_service("echo *")

    result = asyncio.run(service.execute_command("echo hello", str(tmp_path)))

    assert result.exit_code == 0
    assert result.stdout.strip() == "hello"
    assert result.requires_input is False
    assert result.process_info.command == "echo hello"
    assert service.get_running_processes() == []


def test_prompt_then_input_round_trip(tmp_path):
    service = make_service("printf *")
    command = "printf 'Enter name: '; read name; echo \"Hello $name\""

    async def scenario():
        first = await service.execute_command(command, str(tmp_path))
        pid = first.process_info.pid
        assert first.requires_input is True
        assert first.prompt == "Enter name: "
        assert [p.pid for p in service.get_running_processes()] == [pid]
        assert service.get_session(pid).state == SessionState.WAITING_FOR_INPUT

        second = await service.send_input(pid, "Alice")
        return pid, second

    pid, second = asyncio.run(scenario())

    assert second.exit_code == 0
    assert "Hello Alice" in second.stdout
    assert second.requires_input is False
    assert service.get_session(pid) is None


def test_error_marker_fails_fast_with_output(tmp_path):
    service = make_service("echo *")

    with pytest.raises(CommandExecutionError) as excinfo:
        asyncio.run(service.execute_command("echo Error: boom", str(tmp_path)))

    assert "Error: boom" in excinfo.value.stdout
    assert str(excinfo.value).startswith("Command failed:")
    assert service.get_running_processes() == []


def test_non_zero_exit_is_a_failure(tmp_path):
    service = make_service("exit *")

    with pytest.raises(CommandExecutionError, match="Process exited with code 3"):
        asyncio.run(service.execute_command("exit 3", str(tmp_path)))
    assert service.get_running_processes() == []


def test_server_ready_keeps_process_until_stopped(tmp_path):
    service = make_service("echo *")

    async def scenario():
        result = await service.execute_command(
            "echo Server listening on port 3000; sleep 30", str(tmp_path)
        )
        pid = result.process_info.pid
        session = service.get_session(pid)
        assert session.state == SessionState.SERVER_READY
        assert session.is_running

        await service.stop_process(pid)
        assert service.get_session(pid) is None
        await session.wait_closed(timeout=5)
        return result

    result = asyncio.run(scenario())
    assert "listening" in result.stdout


def test_recovered_dev_server_is_not_a_crash(tmp_path):
    service = make_service("echo *")

    async def scenario():
        result = await service.execute_command(
            "echo app crashed - waiting for file changes before starting; sleep 30",
            str(tmp_path),
        )
        await service.stop_process(result.process_info.pid)
        return result

    result = asyncio.run(scenario())
    assert result.exit_code == 0
    assert "waiting for file changes" in result.stdout


def test_execute_timeout_without_readiness(tmp_path):
    service = make_service("sleep *")
    service.execute_timeout = 0.3

    with pytest.raises(CommandTimeoutError, match="Command timed out"):
        asyncio.run(service.execute_command("sleep 1", str(tmp_path)))
    assert service.get_running_processes() == []


def test_input_timeout_keeps_session_alive(tmp_path):
    service = make_service("printf *")
    service.input_timeout = 0.3

    async def scenario():
        first = await service.execute_command(
            "printf 'Name: '; read name; sleep 30", str(tmp_path)
        )
        pid = first.process_info.pid
        with pytest.raises(CommandTimeoutError, match="waiting for response"):
            await service.send_input(pid, "Bob")
        assert service.get_session(pid) is not None
        await service.stop_process(pid)
        assert service.get_session(pid) is None

    asyncio.run(scenario())


def test_send_input_to_unknown_pid():
    service = make_service()

    with pytest.raises(ProcessNotFoundError, match="No running process found with PID: 999999"):
        asyncio.run(service.send_input(999999, "hello"))


def test_stop_unknown_pid_is_a_no_op():
    service = make_service()
    asyncio.run(service.stop_process(999999))


def test_allowed_commands_accessor_returns_a_copy():
    service = make_service("gh pr *")

    allowed = service.get_allowed_commands()
    allowed.append(CommandPatternConfig(pattern="rm -rf *"))

    assert [c.pattern for c in service.get_allowed_commands()] == ["gh pr *"]


def test_update_config_replaces_allow_list(tmp_path):
    service = make_service()
    service.update_config(
        CommandConfig(allowed_commands=[CommandPatternConfig(pattern="true")], shell=SHELL)
    )

    result = asyncio.run(service.execute_command("true", str(tmp_path)))
    assert result.exit_code == 0


def test_exit_is_reported_while_a_background_job_holds_the_pipes(tmp_path):
    service = make_service("sleep *")
    service.execute_timeout = 2

    result = asyncio.run(service.execute_command("sleep 3 & echo done", str(tmp_path)))

    assert result.exit_code == 0
    assert "done" in result.stdout
    assert service.get_running_processes() == []


def test_multibyte_character_split_across_reads(tmp_path):
    service = make_service("printf *")

    result = asyncio.run(
        service.execute_command("printf 'caf\\303'; sleep 0.3; printf '\\251\\n'", str(tmp_path))
    )

    assert result.stdout == "café\n"


def test_error_marker_on_stderr_alone_fails_fast(tmp_path):
    service = make_service("echo *")

    with pytest.raises(CommandExecutionError) as excinfo:
        asyncio.run(service.execute_command("echo 'Error: x' >&2; sleep 2", str(tmp_path)))

    assert "Error: x" in excinfo.value.stderr
    assert service.get_running_processes() == []


def test_prompt_split_across_reads_is_detected(tmp_path):
    service = make_service("printf *")
    command = "printf 'Enter '; sleep 0.2; printf 'name: '; read n; echo \"got $n\""

    async def scenario():
        first = await service.execute_command(command, str(tmp_path))
        assert first.prompt == "Enter name: "
        return await service.send_input(first.process_info.pid, "x")

    second = asyncio.run(scenario())
    assert "got x" in second.stdout


def test_error_after_server_ready_keeps_session_stoppable(tmp_path):
    service = make_service("echo *")
    command = "echo Server listening; sleep 0.3; echo 'TypeError: boom'; sleep 30"

    async def scenario():
        result = await service.execute_command(command, str(tmp_path))
        pid = result.process_info.pid
        await asyncio.sleep(0.8)
        session = service.get_session(pid)
        assert session is not None
        assert session.has_error is True
        assert "TypeError: boom" in session.stdout

        await service.stop_process(pid)
        assert service.get_session(pid) is None
        await session.wait_closed(timeout=5)

    asyncio.run(scenario())
