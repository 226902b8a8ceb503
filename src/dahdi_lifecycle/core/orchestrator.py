# src/dahdi_lifecycle/core/orchestrator.py
"""
Lifecycle orchestrator for the DAHDI hardware stack.
Drives one stop, start, restart or restart-light request through the phase state
machine, calling hardware discovery, span assignment, configuration reconciliation,
module control and PBX control in order. Failures are caught at the phase boundary
and converted into typed PhaseResults; callers only ever see the final
LifecycleReport, never an intermediate phase.
"""

import asyncio
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiofiles

from ..utils.config import Config, LifecycleConfig, PBXConfig, ReconcilerConfig, SpansConfig
from ..utils.logger import DAHDILogger, log_function_call
from ..hardware.discovery import WAN_DRIVERS, HardwareDevice, HardwareDiscovery
from ..hardware.spans import SpanAssignment, SpanAssignmentResolver
from .command_runner import CommandRunner
from .interfaces import (
    ChannelConfigError,
    ChannelVerificationError,
    CommandExecutor,
    CommandResult,
    DangerousDriftError,
    DiscoveryToolError,
    DriftClassification,
    HostContext,
    Intent,
    LifecycleError,
    LifecyclePhase,
    OrderingViolation,
    PBXControlError,
    PhaseOutcome,
    ServiceControlError,
    SpanPolicy,
)
from .mock_command_runner import MockCommandRunner, mock_host_context
from .module_control import ModuleController
from .module_graph import SERVICE_UNIT, ModuleGraph, ModuleSpec, default_graph
from .pbx_control import PBXController
from .reconciler import ConfigReconciler, ReconciliationResult
from .state import LifecycleState

logger = DAHDILogger().get_logger(__name__)

TARGET_PHASE = {
    Intent.STOP: LifecyclePhase.STOPPED,
    Intent.START: LifecyclePhase.RUNNING,
    Intent.RESTART: LifecyclePhase.RUNNING,
    Intent.RESTART_LIGHT: LifecyclePhase.RUNNING,
}


def command_dict(command: Optional[CommandResult]) -> Optional[Dict[str, Any]]:
    """Serializable summary of a command result"""
    if command is None:
        return None
    return {
        "command": command.command_line,
        "exit_code": command.exit_code,
        "timed_out": command.timed_out,
        "stderr_tail": command.stderr_tail(),
    }


def span_assignments(devices: List[HardwareDevice], assignments: List[SpanAssignment]) -> List[SpanAssignment]:
    """Assignments the generator can see; WAN spans only exist once the WAN stack runs"""
    wan = {device.bus_address for device in devices if device.is_wan}
    return [assignment for assignment in assignments if assignment.device_ref not in wan]


@dataclass
class PhaseResult:
    """Typed outcome of one attempt at one phase"""
    phase: LifecyclePhase
    outcome: PhaseOutcome
    detail: str = ""
    attempt: int = 1
    command: Optional[CommandResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "attempt": self.attempt,
            "command": command_dict(self.command),
        }


@dataclass
class LifecycleReport:
    """Final result of one orchestrator invocation"""
    intent: Intent
    force: bool = False
    initial_phase: LifecyclePhase = LifecyclePhase.UNLOADED
    final_phase: LifecyclePhase = LifecyclePhase.UNLOADED
    phase_results: List[PhaseResult] = field(default_factory=list)
    devices: List[HardwareDevice] = field(default_factory=list)
    span_policy: Optional[SpanPolicy] = None
    assignments: List[SpanAssignment] = field(default_factory=list)
    reconciliation: Optional[ReconciliationResult] = None
    software_only: bool = False
    advisories: List[str] = field(default_factory=list)
    failed_phase: Optional[LifecyclePhase] = None
    error: Optional[str] = None
    last_command: Optional[CommandResult] = None

    @property
    def target_phase(self) -> LifecyclePhase:
        return TARGET_PHASE[self.intent]

    @property
    def succeeded(self) -> bool:
        return self.final_phase == self.target_phase

    def failure_summary(self) -> str:
        """One-line operator summary of a failed run"""
        if self.failed_phase is None:
            return ""
        return f"FAILED in {self.failed_phase.value}: {self.error}"

    def to_dict(self) -> Dict[str, Any]:
        reconciliation = None
        if self.reconciliation is not None:
            reconciliation = {
                "classification": self.reconciliation.classification.value,
                "delta": [str(line) for line in self.reconciliation.delta],
                "warnings": list(self.reconciliation.warnings),
                "skipped": self.reconciliation.skipped,
                "installed": self.reconciliation.installed,
            }
        return {
            "intent": self.intent.value,
            "force": self.force,
            "initial_phase": self.initial_phase.value,
            "final_phase": self.final_phase.value,
            "succeeded": self.succeeded,
            "failed_phase": self.failed_phase.value if self.failed_phase else None,
            "error": self.error,
            "software_only": self.software_only,
            "span_policy": self.span_policy.value if self.span_policy else None,
            "devices": [asdict(device) for device in self.devices],
            "assignments": [
                {**asdict(a), "source": a.source.value, "spans": list(a.spans)}
                for a in self.assignments
            ],
            "reconciliation": reconciliation,
            "advisories": list(self.advisories),
            "phases": [result.to_dict() for result in self.phase_results],
            "last_command": command_dict(self.last_command),
        }


@dataclass
class SystemStatus:
    """Read-only snapshot of the hardware stack and the PBX"""
    phase: LifecyclePhase
    modules: List[str]
    pbx_reachable: bool
    channel_module_loaded: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "modules": list(self.modules),
            "pbx_reachable": self.pbx_reachable,
            "channel_module_loaded": self.channel_module_loaded,
        }


class PhaseFailed(Exception):
    """A phase was recorded as FATAL and the invocation must stop"""

    def __init__(self, phase: LifecyclePhase):
        super().__init__(phase.value)
        self.phase = phase


class LifecycleOrchestrator:
    """
    Root component: one instance per host, one invocation at a time.
    The caller is responsible for serializing invocations.
    """
    def __init__(
        self,
        runner: CommandExecutor,
        context: HostContext,
        graph: Optional[ModuleGraph] = None,
        lifecycle: Optional[LifecycleConfig] = None,
        pbx: Optional[PBXConfig] = None,
        spans: Optional[SpansConfig] = None,
        reconciler: Optional[ReconcilerConfig] = None,
        extra_signatures: Optional[Dict[str, List[str]]] = None,
    ):
        self.runner = runner
        self.context = context
        self.config = lifecycle or LifecycleConfig()
        self.graph = graph or default_graph(self.config, context.tools.wanrouter)
        self.span_policy = (spans or SpansConfig()).policy
        self.pbx_config = pbx or PBXConfig()

        self.modules = ModuleController(runner, context, self.config)
        self.discovery = HardwareDiscovery(runner, context, extra_signatures, timeout=self.config.step_timeout)
        self.resolver = SpanAssignmentResolver(context, runner, timeout=self.config.step_timeout)
        self.reconciler = ConfigReconciler(runner, context, reconciler)
        self.pbx = PBXController(runner, context, self.pbx_config)

        self._captured_drivers: List[str] = []
        self.log = logger.bind(component="LifecycleOrchestrator")

    @classmethod
    def from_config(cls, config: Config, runner: Optional[CommandExecutor] = None) -> "LifecycleOrchestrator":
        """
        Build an orchestrator from loaded configuration.
        With development.mock_hardware set, the host is simulated in memory and
        all host paths are moved under a temporary directory.
        """
        context = HostContext.from_config(config)
        if runner is None:
            if config.development.mock_hardware:
                context = mock_host_context(context)
                runner = MockCommandRunner(context)
                logger.warning("mock_host_enabled", scratch_dir=context.scratch_dir)
            else:
                runner = CommandRunner(
                    default_timeout=config.lifecycle.step_timeout,
                    grace_period=config.lifecycle.grace_period,
                )
        return cls(
            runner,
            context,
            lifecycle=config.lifecycle,
            pbx=config.pbx,
            spans=config.spans,
            reconciler=config.reconciler,
            extra_signatures=config.hardware.signatures,
        )

    async def observe(self) -> LifecyclePhase:
        """RUNNING when the base module is loaded, UNLOADED otherwise"""
        try:
            loaded = await self.modules.is_loaded(self.config.base_module)
        except LifecycleError as e:
            self.log.warning("observe_failed", error=str(e))
            return LifecyclePhase.UNLOADED
        return LifecyclePhase.RUNNING if loaded else LifecyclePhase.UNLOADED

    async def status(self) -> SystemStatus:
        """Observed phase, loaded DAHDI modules and PBX reachability"""
        phase = await self.observe()
        modules: List[str] = []
        if phase == LifecyclePhase.RUNNING:
            modules = [self.config.base_module, *await self.modules.base_holders()]
        reachable = await self.pbx.reachable()
        channel_module = await self.pbx.channel_module_loaded() if reachable else None
        return SystemStatus(phase, modules, reachable, channel_module)

    async def preview(self) -> ReconciliationResult:
        """Discover, assign and reconcile without changing the host"""
        try:
            devices = await self.discovery.discover()
        except DiscoveryToolError as e:
            self.log.warning("software_only_mode", reason=str(e))
            devices = []
        policy = self.resolver.read_policy(self.span_policy)
        declarations = await self.resolver.load_declarations() if policy == SpanPolicy.MANUAL else None
        assignments = self.resolver.resolve(devices, policy, declarations)
        warnings = [f"Device left unassigned: {device.bus_address}" for device in self.resolver.unassigned]
        if devices and await self.observe() != LifecyclePhase.RUNNING:
            # The generator only sees spans registered by a loaded stack
            return self.reconciler.skip(
                "kernel_stack_unloaded",
                warnings + [f"DAHDI kernel stack is not loaded; start it to compare {self.context.system_conf}"],
            )
        return await self.reconciler.reconcile(
            span_assignments(devices, assignments),
            self.resolver.unassigned,
            software_only=not devices,
            dry_run=True,
        )

    @log_function_call(level="INFO")
    async def run(self, intent: Intent, force: bool = False) -> LifecycleReport:
        """
        Execute one lifecycle request.

        Args:
            intent: stop, start, restart or restart-light
            force: Terminate the PBX process instead of unloading its channel module

        Returns:
            LifecycleReport with the final phase; FAILED carries the failing phase
        """
        intent = Intent(intent)
        initial = await self.observe()
        state = LifecycleState(initial)
        report = LifecycleReport(intent=intent, force=force, initial_phase=initial)
        self._captured_drivers = []
        self.log.info("lifecycle_start",
                      intent=intent.value,
                      force=force,
                      initial_phase=initial.value,
                      kernel_version=self.context.kernel_version)

        try:
            if intent in (Intent.STOP, Intent.RESTART):
                await self._stop(state, report, full=force)
            elif intent == Intent.RESTART_LIGHT:
                await self._stop(state, report, light_only=True)
            if intent != Intent.STOP:
                await self._start(state, report, kernel=intent != Intent.RESTART_LIGHT)
        except PhaseFailed as e:
            self.log.error("lifecycle_failed",
                           intent=intent.value,
                           phase=e.phase.value,
                           error=report.error)

        report.final_phase = state.phase
        self.log.info("lifecycle_complete",
                      intent=intent.value,
                      final_phase=report.final_phase.value,
                      software_only=report.software_only)
        return report

    async def _phase(
        self,
        state: LifecycleState,
        report: LifecycleReport,
        phase: LifecyclePhase,
        step: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Enter a phase and run its step.
        Retryable errors are retried up to lifecycle.step_retries times; anything
        else, or a retryable error past the bound, fails the invocation.
        """
        state.transition(phase, f"{report.intent.value} requested")
        attempt = 0
        while True:
            attempt += 1
            try:
                value = await step()
            except LifecycleError as e:
                command = e.command or self.runner.last_result
                if e.retryable and attempt <= self.config.step_retries:
                    report.phase_results.append(
                        PhaseResult(phase, PhaseOutcome.RETRYABLE, str(e), attempt, command)
                    )
                    self.log.warning("phase_retry",
                                     phase=phase.value,
                                     attempt=attempt,
                                     error=str(e))
                    await asyncio.sleep(self.config.settle_delay)
                    continue
                report.phase_results.append(PhaseResult(phase, PhaseOutcome.FATAL, str(e), attempt, command))
                report.failed_phase = phase
                report.error = str(e)
                report.last_command = command
                self.log.error("phase_failed",
                               phase=phase.value,
                               attempt=attempt,
                               error=str(e),
                               error_type=type(e).__name__)
                state.fail(str(e), phase=phase.value)
                raise PhaseFailed(phase) from e

            report.phase_results.append(
                PhaseResult(phase, PhaseOutcome.SUCCESS, "", attempt, self.runner.last_result)
            )
            report.last_command = self.runner.last_result
            return value

    # Teardown

    async def _stop(
        self,
        state: LifecycleState,
        report: LifecycleReport,
        full: bool = False,
        light_only: bool = False,
    ) -> None:
        await self._phase(state, report, LifecyclePhase.STOPPING,
                          lambda: self._teardown(full, light_only))
        state.transition(LifecyclePhase.STOPPED, "teardown complete")

    async def _teardown(self, full: bool, light_only: bool) -> None:
        if light_only:
            if not await self.modules.is_loaded(self.config.base_module):
                raise LifecycleError("restart-light requires the DAHDI kernel stack to be loaded")
            await self._release_channels()
            return

        await self._quiesce_pbx(full)

        for driver in await self.modules.loaded_drivers():
            if driver not in self._captured_drivers:
                self._captured_drivers.append(driver)
        self.log.info("drivers_captured", drivers=self._captured_drivers)

        for unit in self.graph.teardown_order():
            if not self._unit_present(unit):
                self.log.info("unit_skipped", unit=unit.name, missing_tool=unit.requires_tool)
                continue
            await self._check_dependents(unit)
            await self.modules.stop_unit(unit)

        await self._restop_base_service()

    async def _check_dependents(self, unit: ModuleSpec) -> None:
        """Refuse to stop a unit while anything that depends on it is live"""
        for dependent in self.graph.dependents_of(unit.name):
            if await self.modules.unit_live(dependent):
                raise OrderingViolation(
                    f"Cannot stop {unit.name}: dependent {dependent.name} is still live",
                    self.runner.last_result,
                )

    async def _restop_base_service(self) -> None:
        """Stop the dahdi service once more after the base module is gone"""
        if SERVICE_UNIT not in self.graph:
            return
        service = self.graph.get(SERVICE_UNIT).control_name
        try:
            await self.modules.service(service, "stop")
        except ServiceControlError:
            if await self.modules.is_loaded(self.config.base_module):
                raise
            self.log.info("base_service_restop_ignored", service=service)

    async def _quiesce_pbx(self, full: bool) -> None:
        """Detach the PBX from the hardware: unload its channel module, or terminate it"""
        if full:
            await self.pbx.terminate()
            return
        if await self.pbx.reachable():
            try:
                await self.pbx.unload_channel_module()
                return
            except PBXControlError as e:
                self.log.warning("channel_unload_failed_escalating", error=str(e))
        elif not await self.pbx.process_alive():
            self.log.info("pbx_not_running")
            return
        else:
            self.log.warning("pbx_unresponsive_escalating")
        await self.pbx.terminate()

    async def _release_channels(self) -> None:
        if not await self.pbx.reachable():
            raise PBXControlError(
                "PBX console is not reachable; restart-light needs a running PBX",
                self.pbx.last_command,
            )
        await self.pbx.unload_channel_module()

    # Bring-up

    async def _start(self, state: LifecycleState, report: LifecycleReport, kernel: bool = True) -> None:
        devices = await self._phase(state, report, LifecyclePhase.DISCOVERING,
                                    lambda: self._discover(report))
        assignments = await self._phase(state, report, LifecyclePhase.ASSIGNING,
                                        lambda: self._assign(report, devices))
        await self._phase(state, report, LifecyclePhase.CONFIGURING,
                          lambda: self._configure(report, devices, assignments, kernel))
        await self._phase(state, report, LifecyclePhase.STARTING,
                          lambda: self._bringup(report, devices, kernel))
        state.transition(LifecyclePhase.RUNNING, "bring-up complete")

    async def _discover(self, report: LifecycleReport) -> List[HardwareDevice]:
        try:
            devices = await self.discovery.discover()
        except DiscoveryToolError as e:
            report.software_only = True
            report.advisories.append(f"Hardware discovery unavailable, continuing software-only: {e}")
            self.log.warning("software_only_mode", reason=str(e))
            return []
        report.devices = devices
        if not devices:
            report.software_only = True
            self.log.info("software_only_mode", reason="no telephony hardware found")
        return devices

    async def _assign(self, report: LifecycleReport, devices: List[HardwareDevice]) -> List[SpanAssignment]:
        policy = self.resolver.read_policy(self.span_policy)
        declarations = None
        if policy == SpanPolicy.MANUAL:
            declarations = await self.resolver.load_declarations()
        assignments = self.resolver.resolve(devices, policy, declarations)
        report.span_policy = policy
        report.assignments = assignments
        report.advisories.extend(self.resolver.advisories)
        return assignments

    async def _configure(
        self,
        report: LifecycleReport,
        devices: List[HardwareDevice],
        assignments: List[SpanAssignment],
        kernel: bool,
    ) -> ReconciliationResult:
        if kernel and not report.software_only:
            await self._expose_spans(report, devices)
        result = await self.reconciler.reconcile(
            span_assignments(devices, assignments),
            self.resolver.unassigned,
            software_only=report.software_only,
        )
        report.reconciliation = result
        report.advisories.extend(result.warnings)
        if result.classification == DriftClassification.DANGEROUS_DRIFT:
            raise DangerousDriftError(
                f"Generated configuration differs from {self.context.system_conf} "
                f"in span or channel layout:\n{result.diff_text()}",
                result,
            )
        if result.classification == DriftClassification.BENIGN_DRIFT:
            self.log.warning("benign_drift", diff=[str(line) for line in result.delta])
        return result

    async def _expose_spans(self, report: LifecycleReport, devices: List[HardwareDevice]) -> None:
        """
        Load the base module and the card drivers, then bind spans, so the
        generator sees the spans this run assigned. Nothing from the service
        onwards is started here.
        """
        drivers = await self._driver_set(devices)
        service = self.graph.get(SERVICE_UNIT)
        for unit in self.graph.bringup_order():
            if unit.start_order >= service.start_order:
                break
            await self.modules.start_unit(unit, drivers)
        await self.resolver.apply(report.span_policy or SpanPolicy.AUTO)

    async def _bringup(self, report: LifecycleReport, devices: List[HardwareDevice], kernel: bool) -> None:
        if report.software_only:
            self.log.info("kernel_bringup_skipped", reason="software_only")
        else:
            if kernel:
                drivers = await self._driver_set(devices)
                for unit in self.graph.bringup_order():
                    if not self._unit_present(unit):
                        self.log.info("unit_skipped", unit=unit.name, missing_tool=unit.requires_tool)
                        continue
                    await self.modules.start_unit(unit, drivers)
            await self._apply_channel_config()
        await self._start_pbx(report)

    async def _driver_set(self, devices: List[HardwareDevice]) -> List[str]:
        """Captured drivers, then discovered primary drivers, then the driver list file"""
        drivers: List[str] = []
        candidates = [
            *self._captured_drivers,
            *(device.primary_driver for device in devices),
            *await self._read_modules_file(),
        ]
        for driver in candidates:
            if not driver or driver in drivers:
                continue
            if driver in WAN_DRIVERS or driver in self.config.wan_modules:
                continue
            drivers.append(driver)
        self.log.info("driver_set", drivers=drivers)
        return drivers

    async def _read_modules_file(self) -> List[str]:
        path = self.context.modules_file
        if not os.path.exists(path):
            return []
        async with aiofiles.open(path) as f:
            text = await f.read()
        names = (line.split("#", 1)[0].strip() for line in text.splitlines())
        return [name for name in names if name]

    async def _apply_channel_config(self) -> None:
        tool = self.context.tools.cfg
        result = await self.runner.run(tool, timeout=self.config.step_timeout)
        if not result.ok:
            raise ChannelConfigError(f"{tool} failed to apply the channel configuration", result)
        self.log.info("channel_config_applied", tool=tool)

    async def _start_pbx(self, report: LifecycleReport) -> None:
        if not await self.pbx.reachable():
            if await self.pbx.process_alive():
                raise PBXControlError(
                    "PBX process is running but its console does not answer",
                    self.pbx.last_command,
                )
            await self.pbx.start()
        if report.software_only:
            self.log.info("channel_module_skipped", reason="software_only")
            return
        await self.pbx.load_channel_module()
        if self.pbx_config.verify_channels:
            await self._verify_channels(report.reconciliation)

    async def _verify_channels(self, result: Optional[ReconciliationResult]) -> None:
        if result is None or result.skipped:
            return
        expected = result.expected_voice_channels
        channels = await self.pbx.channels()
        unknown = sorted(set(channels) - expected)
        if unknown:
            raise ChannelVerificationError(
                f"PBX lists channels missing from {self.context.system_conf}: {unknown}",
                self.pbx.last_command,
            )
        if expected and not channels:
            raise ChannelVerificationError(
                f"PBX lists no DAHDI channels, expected up to {len(expected)}",
                self.pbx.last_command,
            )
        self.log.info("channels_verified", channels=len(channels), configured=len(expected))

    def _unit_present(self, unit: ModuleSpec) -> bool:
        return unit.requires_tool is None or self.runner.has_tool(unit.requires_tool)
