# src/dahdi_lifecycle/core/pbx_control.py
"""
Integration with the running Asterisk process.
Talks to the PBX through its remote console (asterisk -rx) to query, unload and
load the DAHDI channel driver and to list channels, and controls the process
itself through its service unit and pid file.
"""

import asyncio
import re
import time
from typing import List, Optional

import aiofiles

from ..utils.config import PBXConfig
from ..utils.logger import DAHDILogger, log_function_call
from .interfaces import (
    CommandExecutor,
    CommandResult,
    HostContext,
    PBXControlError,
    ToolMissingError,
)

logger = DAHDILogger().get_logger(__name__)

_MODULES_LOADED = re.compile(r"^\s*(\d+)\s+modules?\s+loaded", re.MULTILINE)
_CONSOLE_FAILURE = ("Unable to", "No such", "not found")


def parse_module_count(output: str) -> int:
    """Number of modules reported by 'module show like'"""
    match = _MODULES_LOADED.search(output)
    return int(match.group(1)) if match else 0


def parse_channel_list(output: str) -> List[int]:
    """
    Channel numbers from 'dahdi show channels'.
    The header and the pseudo channel are skipped.
    """
    channels = []
    for line in output.splitlines():
        tokens = line.split()
        if tokens and tokens[0].isdigit():
            channels.append(int(tokens[0]))
    return channels


class PBXController:
    """
    Controls the PBX process and its DAHDI channel driver.
    """
    def __init__(self, runner: CommandExecutor, context: HostContext, config: Optional[PBXConfig] = None):
        self.runner = runner
        self.context = context
        self.config = config or PBXConfig()
        self.last_command: Optional[CommandResult] = None
        self.log = logger.bind(component="PBXController", channel_module=self.config.channel_module)

    async def console(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """Run one remote console command"""
        result = await self.runner.run(
            self.context.tools.asterisk,
            ["-rx", command],
            timeout=timeout or self.config.probe_timeout,
        )
        self.last_command = result
        return result

    async def read_pid(self) -> Optional[int]:
        """Pid from the PBX pid file, None if absent or unreadable"""
        try:
            async with aiofiles.open(self.context.pbx_pid_file) as f:
                return int((await f.read()).strip())
        except (OSError, ValueError):
            return None

    async def process_alive(self) -> bool:
        pid = await self.read_pid()
        return pid is not None and self.runner.pid_alive(pid)

    async def reachable(self) -> bool:
        """Whether the remote console answers within the probe timeout"""
        try:
            result = await self.console("core show version")
        except ToolMissingError:
            return False
        return result.ok and bool(result.stdout.strip()) and not self._rejected(result)

    @staticmethod
    def _rejected(result: CommandResult) -> bool:
        text = result.stdout + result.stderr
        return any(marker in text for marker in _CONSOLE_FAILURE)

    async def channel_module_loaded(self) -> bool:
        result = await self.console(f"module show like {self.config.channel_module}")
        if not result.ok:
            raise PBXControlError("Unable to query PBX modules", result)
        return parse_module_count(result.stdout) > 0

    @log_function_call(level="DEBUG")
    async def unload_channel_module(self) -> bool:
        """
        Unload the channel driver from the live process.

        Returns:
            True if it was unloaded, False if it was not loaded
        """
        if not await self.channel_module_loaded():
            self.log.debug("channel_module_not_loaded")
            return False
        result = await self.console(f"module unload {self.config.channel_module}")
        if not result.ok or self._rejected(result) or await self.channel_module_loaded():
            raise PBXControlError(f"PBX refused to unload {self.config.channel_module}", result)
        self.log.info("channel_module_unloaded")
        return True

    @log_function_call(level="DEBUG")
    async def load_channel_module(self) -> bool:
        """
        Load the channel driver into the live process.

        Returns:
            True if it was loaded, False if it was already loaded
        """
        if await self.channel_module_loaded():
            self.log.debug("channel_module_already_loaded")
            return False
        result = await self.console(f"module load {self.config.channel_module}")
        if not result.ok or self._rejected(result) or not await self.channel_module_loaded():
            raise PBXControlError(f"PBX failed to load {self.config.channel_module}", result)
        self.log.info("channel_module_loaded")
        return True

    async def channels(self) -> List[int]:
        """Channel numbers the PBX currently exposes"""
        result = await self.console("dahdi show channels")
        if not result.ok:
            raise PBXControlError("Unable to list PBX channels", result)
        return parse_channel_list(result.stdout)

    @log_function_call(level="DEBUG")
    async def start(self) -> None:
        """Start the PBX service and wait until its console answers"""
        result = await self.runner.run(
            self.context.tools.service,
            [self.config.service, "start"],
            timeout=self.config.start_timeout,
        )
        self.last_command = result
        if not result.ok:
            raise PBXControlError(f"service {self.config.service} start failed", result)

        deadline = time.monotonic() + self.config.start_timeout
        while time.monotonic() < deadline:
            if await self.reachable():
                self.log.info("pbx_started")
                return
            await asyncio.sleep(0.5)
        raise PBXControlError("PBX started but its console never answered", self.last_command)

    @log_function_call(level="DEBUG")
    async def terminate(self) -> None:
        """
        Stop the whole PBX process: service stop first, then grace-then-kill
        on the pid from the pid file if it is still alive.
        """
        try:
            result = await self.runner.run(
                self.context.tools.service,
                [self.config.service, "stop"],
                timeout=self.config.stop_timeout,
            )
            self.last_command = result
            if not result.ok:
                self.log.warning("pbx_service_stop_failed",
                                 exit_code=result.exit_code,
                                 timed_out=result.timed_out)
        except ToolMissingError:
            self.log.warning("pbx_service_tool_missing")

        pid = await self.read_pid()
        if pid is None or not self.runner.pid_alive(pid):
            self.log.info("pbx_stopped")
            return

        self.log.warning("pbx_still_running", pid=pid)
        if not await self.runner.terminate_pid(pid):
            raise PBXControlError(f"PBX process {pid} survived SIGKILL", self.last_command)
        self.log.info("pbx_killed", pid=pid)
