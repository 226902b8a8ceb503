# src/dahdi_lifecycle/core/command_runner.py
"""
External command execution for the lifecycle orchestrator.
Every invocation of hardware and PBX tooling goes through CommandRunner, which
captures exit status and output and enforces an optional timeout. On timeout the
whole process group receives SIGTERM, then SIGKILL once the grace period expires.
A non-zero exit status is a normal result, never an exception.
"""

import asyncio
import os
import shutil
import signal
import time
from typing import List, Mapping, Optional, Sequence

from ..utils.logger import DAHDILogger
from .interfaces import CommandResult, ToolMissingError

logger = DAHDILogger().get_logger(__name__)

POLL_INTERVAL = 0.05


class CommandRunner:
    """
    Runs one external command at a time and reaps it before returning.
    """
    def __init__(self, default_timeout: Optional[float] = None, grace_period: float = 2.0):
        self.default_timeout = default_timeout
        self.grace_period = grace_period
        self.last_result: Optional[CommandResult] = None
        self.log = logger.bind(component="CommandRunner")

    def has_tool(self, command: str) -> bool:
        """Whether the command resolves to an executable on PATH"""
        return shutil.which(command) is not None

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """
        Run a command and wait for it to finish.

        Args:
            command: Executable name or path
            args: Command arguments
            timeout: Seconds before the process group is terminated; None waits forever
            env: Extra environment variables layered over the current environment

        Returns:
            CommandResult with exit code, captured output and timeout flag

        Raises:
            ToolMissingError: If the executable cannot be started
        """
        argv = [command, *args]
        if timeout is None:
            timeout = self.default_timeout
        full_env = {**os.environ, **env} if env else None

        self.log.debug("command_start", command=" ".join(argv), timeout=timeout)
        started = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            self.log.error("command_not_executable", command=command, error=str(e))
            raise ToolMissingError(command) from e

        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        readers = [
            asyncio.ensure_future(self._drain(proc.stdout, stdout_chunks)),
            asyncio.ensure_future(self._drain(proc.stderr, stderr_chunks)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(proc.wait(), timeout)
        except asyncio.TimeoutError:
            timed_out = True
            self.log.warning("command_timeout",
                             command=" ".join(argv),
                             pid=proc.pid,
                             timeout=timeout)
            await self._terminate_group(proc)

        # Daemonized children may keep the pipes open after the leader exits
        done, pending = await asyncio.wait(readers, timeout=self.grace_period)
        for reader in pending:
            reader.cancel()

        result = CommandResult(
            command=argv,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=b"".join(stdout_chunks).decode(errors="replace"),
            stderr=b"".join(stderr_chunks).decode(errors="replace"),
            timed_out=timed_out,
            duration=time.monotonic() - started,
            pid=proc.pid,
        )
        self.last_result = result
        self.log.debug("command_complete",
                       command=result.command_line,
                       exit_code=result.exit_code,
                       timed_out=timed_out,
                       duration=round(result.duration, 3))
        return result

    @staticmethod
    async def _drain(stream: Optional[asyncio.StreamReader], chunks: List[bytes]) -> None:
        """Read a pipe to EOF, keeping what was read if cancelled"""
        if stream is None:
            return
        while True:
            data = await stream.read(4096)
            if not data:
                return
            chunks.append(data)

    async def _terminate_group(self, proc: asyncio.subprocess.Process) -> None:
        """Send SIGTERM to the process group, then SIGKILL after the grace period"""
        self._signal_group(proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), self.grace_period)
            return
        except asyncio.TimeoutError:
            self.log.warning("command_kill", pid=proc.pid, grace_period=self.grace_period)
        self._signal_group(proc.pid, signal.SIGKILL)
        await proc.wait()

    @staticmethod
    def _signal_group(pgid: int, sig: int) -> None:
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            pass

    def pid_alive(self, pid: int) -> bool:
        """Whether a process with this pid exists"""
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    async def terminate_pid(self, pid: int, grace: Optional[float] = None) -> bool:
        """
        Terminate a process this runner did not spawn, using the same
        grace-then-kill policy as timed-out commands.

        Args:
            pid: Target process id
            grace: Seconds to wait after SIGTERM before SIGKILL

        Returns:
            True if the process is gone afterwards
        """
        grace = self.grace_period if grace is None else grace
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.kill(pid, sig)
            except ProcessLookupError:
                return True
            self.log.info("process_signalled", pid=pid, signal=signal.Signals(sig).name)
            deadline = time.monotonic() + grace
            while time.monotonic() < deadline:
                if not self.pid_alive(pid):
                    return True
                await asyncio.sleep(POLL_INTERVAL)
        return not self.pid_alive(pid)
