# src/dahdi_lifecycle/core/interfaces.py
"""
Core interfaces and types for the DAHDI lifecycle orchestrator.
Defines the exception taxonomy, lifecycle enums, the host context threaded through
every component, and the protocol implemented by command runners.
"""

import platform
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Mapping, Optional, Protocol, Sequence

from ..utils.config import Config, ToolsConfig


class LifecyclePhase(str, Enum):
    """Phases of the hardware lifecycle state machine"""
    UNLOADED = "UNLOADED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    DISCOVERING = "DISCOVERING"
    ASSIGNING = "ASSIGNING"
    CONFIGURING = "CONFIGURING"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    FAILED = "FAILED"


class Intent(str, Enum):
    """Lifecycle requests accepted by the orchestrator"""
    STOP = "stop"
    START = "start"
    RESTART = "restart"
    RESTART_LIGHT = "restart-light"


class SpanPolicy(str, Enum):
    """How spans are bound to slots"""
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class AssignmentSource(str, Enum):
    """Origin of a single span assignment"""
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class DriftClassification(str, Enum):
    """Result of comparing generated and active channel configuration"""
    CLEAN = "CLEAN"
    BENIGN_DRIFT = "BENIGN_DRIFT"
    DANGEROUS_DRIFT = "DANGEROUS_DRIFT"


class PhaseOutcome(str, Enum):
    """Typed outcome of one lifecycle phase"""
    SUCCESS = "SUCCESS"
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"


@dataclass
class CommandResult:
    """Outcome of one external command invocation"""
    command: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration: float = 0.0
    pid: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def command_line(self) -> str:
        return " ".join(self.command)

    def stderr_tail(self, lines: int = 5) -> str:
        """Last lines of stderr, falling back to stdout when stderr is empty"""
        text = self.stderr.strip() or self.stdout.strip()
        return "\n".join(text.splitlines()[-lines:])


class LifecycleError(Exception):
    """Base exception for lifecycle failures"""
    retryable = False

    def __init__(self, message: str, command: Optional[CommandResult] = None):
        super().__init__(message)
        self.command = command


class ToolMissingError(LifecycleError):
    """A required control tool is not installed on the host"""

    def __init__(self, tool: str):
        super().__init__(f"Required tool not found: {tool}")
        self.tool = tool


class OrderingViolation(LifecycleError):
    """A lower-layer unit would be stopped while a dependent is still live"""


class ModuleControlError(LifecycleError):
    """Kernel module load or unload failed"""
    retryable = True


class ServiceControlError(LifecycleError):
    """Service start or stop failed"""
    retryable = True


class DiscoveryToolError(LifecycleError):
    """The hardware inventory tool is missing or crashed"""


class SpanAssignmentError(LifecycleError):
    """Span declaration is invalid or contradicts itself"""


class GenerationError(LifecycleError):
    """The configuration generator failed or hung twice"""


class DangerousDriftError(LifecycleError):
    """Generated and active configuration differ in an unsafe way"""

    def __init__(self, message: str, result):
        super().__init__(message)
        self.result = result


class ChannelConfigError(LifecycleError):
    """The channel configuration could not be applied to the loaded drivers"""
    retryable = True


class PBXControlError(LifecycleError):
    """The PBX console rejected a request or did not answer"""
    retryable = True


class ChannelVerificationError(LifecycleError):
    """The PBX reports a channel list that does not match the configuration"""


class StateTransitionError(LifecycleError):
    """Invalid lifecycle state transition"""


@dataclass(frozen=True)
class HostContext:
    """
    Host-wide facts threaded explicitly through discovery, reconciliation and
    module control instead of process globals.
    """
    kernel_version: str
    dahdi_config_dir: str
    system_conf: str
    assigned_spans_conf: str
    modules_file: str
    scratch_dir: str
    pbx_pid_file: str
    tools: ToolsConfig = field(default_factory=ToolsConfig)

    @classmethod
    def from_config(cls, config: Config) -> "HostContext":
        """Build the context from loaded configuration"""
        return cls(
            kernel_version=config.host.kernel_version or platform.release(),
            dahdi_config_dir=config.host.dahdi_config_dir,
            system_conf=config.host.system_conf,
            assigned_spans_conf=config.host.assigned_spans_conf,
            modules_file=config.host.modules_file,
            scratch_dir=config.host.scratch_dir,
            pbx_pid_file=config.pbx.pid_file,
            tools=config.tools,
        )


class CommandExecutor(Protocol):
    """Protocol implemented by the real and the mock command runner"""
    last_result: Optional[CommandResult]

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        """Run a command to completion or until the timeout forces termination"""
        ...

    def has_tool(self, command: str) -> bool:
        """Whether the command can be executed on this host"""
        ...

    def pid_alive(self, pid: int) -> bool:
        """Whether a process with this pid exists"""
        ...

    async def terminate_pid(self, pid: int, grace: Optional[float] = None) -> bool:
        """Terminate an unrelated process with the grace-then-kill policy"""
        ...
