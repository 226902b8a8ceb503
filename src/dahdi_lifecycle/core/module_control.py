# src/dahdi_lifecycle/core/module_control.py
"""
Kernel module and service control.
Translates lsmod, modprobe, service and wanrouter into typed operations on the
units of the module graph. Operations are idempotent: asking for the state a
unit is already in succeeds without touching the host.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from ..utils.config import LifecycleConfig
from ..utils.logger import DAHDILogger, log_function_call
from .interfaces import (
    CommandExecutor,
    CommandResult,
    HostContext,
    ModuleControlError,
    OrderingViolation,
    ServiceControlError,
)
from .module_graph import ModuleSpec, UnitKind

logger = DAHDILogger().get_logger(__name__)


class ServiceStatus(str, Enum):
    """Service state derived from LSB status exit codes"""
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    UNKNOWN = "UNKNOWN"


@dataclass
class LoadedModule:
    """One row of lsmod output"""
    name: str
    size: int
    use_count: int
    used_by: List[str] = field(default_factory=list)


def parse_lsmod(output: str) -> Dict[str, LoadedModule]:
    """
    Parse lsmod output into loaded modules keyed by name.

    Args:
        output: Raw lsmod stdout, header line included

    Returns:
        Mapping of module name to LoadedModule
    """
    modules: Dict[str, LoadedModule] = {}
    for line in output.splitlines():
        tokens = line.split()
        if len(tokens) < 3 or tokens[0] == "Module":
            continue
        try:
            size = int(tokens[1])
            use_count = int(tokens[2])
        except ValueError:
            continue
        used_by: List[str] = []
        if len(tokens) > 3:
            used_by = [
                name for name in tokens[3].split(",")
                if name and not name.startswith("[")
            ]
        modules[tokens[0]] = LoadedModule(tokens[0], size, use_count, used_by)
    return modules


def service_status_from_exit(exit_code: int) -> ServiceStatus:
    """Map an LSB init script status exit code"""
    if exit_code == 0:
        return ServiceStatus.RUNNING
    if exit_code in (1, 2, 3):
        return ServiceStatus.STOPPED
    return ServiceStatus.UNKNOWN


class ModuleController:
    """
    Controls the units of the module graph through the command runner.
    """
    def __init__(self, runner: CommandExecutor, context: HostContext, config: Optional[LifecycleConfig] = None):
        self.runner = runner
        self.context = context
        self.config = config or LifecycleConfig()
        self.last_command: Optional[CommandResult] = None
        self.log = logger.bind(component="ModuleController")

    async def _run(self, command: str, *args: str) -> CommandResult:
        result = await self.runner.run(command, args, timeout=self.config.step_timeout)
        self.last_command = result
        return result

    async def loaded_modules(self) -> Dict[str, LoadedModule]:
        """Currently loaded kernel modules"""
        result = await self._run(self.context.tools.lsmod)
        if not result.ok:
            raise ModuleControlError("Unable to list kernel modules", result)
        return parse_lsmod(result.stdout)

    async def is_loaded(self, module: str) -> bool:
        return module in await self.loaded_modules()

    async def base_holders(self) -> List[str]:
        """Modules currently holding the base module, e.g. hardware drivers"""
        loaded = await self.loaded_modules()
        base = loaded.get(self.config.base_module)
        return list(base.used_by) if base else []

    async def loaded_drivers(self) -> List[str]:
        """Hardware drivers holding the base module, excluding echo cancellers and WAN modules"""
        return [
            name for name in await self.base_holders()
            if not name.startswith("dahdi_echocan") and name not in self.config.wan_modules
        ]

    @log_function_call(level="DEBUG")
    async def load(self, module: str) -> bool:
        """
        Load a kernel module.

        Returns:
            True if the module was loaded by this call, False if already loaded
        """
        if await self.is_loaded(module):
            self.log.debug("module_already_loaded", module=module)
            return False
        result = await self._run(self.context.tools.modprobe, module)
        if not result.ok:
            if await self.is_loaded(module):
                self.log.info("module_load_tolerated", module=module, exit_code=result.exit_code)
                return False
            raise ModuleControlError(f"Failed to load kernel module {module}", result)
        self.log.info("module_loaded", module=module)
        return True

    @log_function_call(level="DEBUG")
    async def unload(self, module: str) -> bool:
        """
        Unload a kernel module that nothing holds anymore.

        Returns:
            True if the module was unloaded by this call, False if it was not loaded

        Raises:
            OrderingViolation: If another module still holds this one
            ModuleControlError: If modprobe -r fails and the module stays loaded
        """
        loaded = await self.loaded_modules()
        entry = loaded.get(module)
        if entry is None:
            self.log.debug("module_already_unloaded", module=module)
            return False
        if entry.used_by:
            raise OrderingViolation(
                f"Refusing to unload {module}: still used by {', '.join(entry.used_by)}",
                self.last_command,
            )
        result = await self._run(self.context.tools.modprobe, "-r", module)
        if not result.ok:
            if not await self.is_loaded(module):
                self.log.info("module_unload_tolerated", module=module, exit_code=result.exit_code)
                return False
            raise ModuleControlError(f"Failed to remove kernel module {module}", result)
        self.log.info("module_unloaded", module=module)
        return True

    async def service_status(self, service: str) -> ServiceStatus:
        result = await self._run(self.context.tools.service, service, "status")
        return service_status_from_exit(result.exit_code)

    @log_function_call(level="DEBUG")
    async def service(self, service: str, action: str) -> None:
        """
        Start or stop a service unit.

        Raises:
            ServiceControlError: If the action fails and the service is not in the requested state
        """
        result = await self._run(self.context.tools.service, service, action)
        if result.ok:
            self.log.info("service_action_complete", service=service, action=action)
            return
        wanted = ServiceStatus.RUNNING if action == "start" else ServiceStatus.STOPPED
        if action in ("start", "stop") and await self.service_status(service) == wanted:
            self.log.info("service_action_tolerated",
                          service=service,
                          action=action,
                          exit_code=result.exit_code)
            return
        self.last_command = result
        raise ServiceControlError(f"service {service} {action} failed", result)

    async def wan_live(self) -> bool:
        """Whether any WAN driver kernel object is still loaded"""
        loaded = await self.loaded_modules()
        return any(module in loaded for module in self.config.wan_modules)

    async def stop_wan(self) -> None:
        """Quiesce all WAN spans, stop the WAN service and remove its kernel objects"""
        wanrouter = self.context.tools.wanrouter
        result = await self._run(wanrouter, "stop", "all")
        if not result.ok:
            raise ServiceControlError("Failed to stop WAN spans", result)
        await self.service(self.config.wan_service, "stop")
        for module in self.config.wan_modules:
            await self.unload(module)

    async def start_wan(self) -> None:
        """Start the WAN service and log its span status"""
        await self.service(self.config.wan_service, "start")
        status = await self._run(self.context.tools.wanrouter, "status")
        self.log.info("wan_status", exit_code=status.exit_code, output=status.stdout.strip()[-500:])

    async def unit_live(self, unit: ModuleSpec) -> bool:
        """Whether a unit still holds resources a lower layer depends on"""
        if unit.kind == UnitKind.KERNEL_MODULE:
            return await self.is_loaded(unit.control_name)
        if unit.kind == UnitKind.SERVICE:
            return await self.service_status(unit.control_name) == ServiceStatus.RUNNING
        if unit.kind == UnitKind.WAN_STACK:
            return await self.wan_live()
        return bool(await self.loaded_drivers())

    async def stop_unit(self, unit: ModuleSpec) -> None:
        """Stop one unit; units that are not removable are left to their owner"""
        if not unit.removable:
            self.log.debug("unit_stop_side_effect", unit=unit.name)
            return
        if unit.kind == UnitKind.KERNEL_MODULE:
            await self.unload(unit.control_name)
        elif unit.kind == UnitKind.SERVICE:
            await self.service(unit.control_name, "stop")
        elif unit.kind == UnitKind.WAN_STACK:
            await self.stop_wan()
        else:
            for driver in await self.loaded_drivers():
                await self.unload(driver)

    async def start_unit(self, unit: ModuleSpec, drivers: Iterable[str] = ()) -> None:
        """Start one unit; the driver set loads each named driver in order"""
        if unit.kind == UnitKind.KERNEL_MODULE:
            await self.load(unit.control_name)
        elif unit.kind == UnitKind.SERVICE:
            await self.service(unit.control_name, "start")
        elif unit.kind == UnitKind.WAN_STACK:
            await self.start_wan()
        else:
            for driver in drivers:
                self.log.info("starting_driver", driver=driver)
                await self.load(driver)
