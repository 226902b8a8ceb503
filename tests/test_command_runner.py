import asyncio
import time

import pytest

from dahdi_lifecycle.core.command_runner import CommandRunner
from dahdi_lifecycle.core.interfaces import ToolMissingError


async def test_captures_stdout_and_exit_status():
    runner = CommandRunner()
    result = await runner.run("echo", ["hello"])
    assert result.ok
    assert result.exit_code == 0
    assert result.stdout == "hello\n"
    assert runner.last_result is result


async def test_nonzero_exit_is_a_result_not_an_exception():
    runner = CommandRunner()
    result = await runner.run("sh", ["-c", "echo oops >&2; exit 3"])
    assert not result.ok
    assert result.exit_code == 3
    assert result.stderr_tail() == "oops"
    assert not result.timed_out


async def test_missing_tool_raises():
    runner = CommandRunner()
    with pytest.raises(ToolMissingError) as exc_info:
        await runner.run("definitely-not-a-real-dahdi-tool")
    assert exc_info.value.tool == "definitely-not-a-real-dahdi-tool"


async def test_extra_environment_is_passed():
    runner = CommandRunner()
    result = await runner.run("sh", ["-c", "echo $DAHDI_CONF_FILE"], env={"DAHDI_CONF_FILE": "/tmp/x.conf"})
    assert result.stdout.strip() == "/tmp/x.conf"


async def test_timeout_terminates_within_grace():
    runner = CommandRunner(grace_period=0.1)
    started = time.monotonic()
    result = await runner.run("sleep", ["30"], timeout=0.2)
    elapsed = time.monotonic() - started

    assert result.timed_out
    assert not result.ok
    assert elapsed < 0.2 + 0.1 + 0.3
    assert not runner.pid_alive(result.pid)


async def test_timeout_kills_process_ignoring_sigterm():
    runner = CommandRunner(grace_period=0.2)
    started = time.monotonic()
    result = await runner.run(
        "sh", ["-c", 'trap "" TERM; while true; do sleep 0.05; done'],
        timeout=0.2,
    )
    elapsed = time.monotonic() - started

    assert result.timed_out
    assert elapsed < 0.2 + 0.2 + 0.5
    assert not runner.pid_alive(result.pid)


async def test_terminate_pid_stops_unrelated_process():
    runner = CommandRunner(grace_period=0.2)
    proc = await asyncio.create_subprocess_exec("sleep", "30")
    gone, _ = await asyncio.gather(runner.terminate_pid(proc.pid), proc.wait())
    assert gone
    assert proc.returncode is not None


def test_has_tool():
    runner = CommandRunner()
    assert runner.has_tool("sh")
    assert not runner.has_tool("definitely-not-a-real-dahdi-tool")
