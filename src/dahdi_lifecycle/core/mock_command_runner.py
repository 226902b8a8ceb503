# src/dahdi_lifecycle/core/mock_command_runner.py
"""
Mock DAHDI host for development and testing.
Simulates the kernel module table, LSB services, the Wanpipe tools, the DAHDI
utilities and the Asterisk remote console in memory, so the whole lifecycle can
run on a machine without telephony hardware. Every invocation is recorded in
`calls`, and failures or generator hangs can be injected per command.
"""

import dataclasses
import os
import tempfile
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from ..utils.logger import DAHDILogger
from ..hardware.discovery import HardwareDevice, parse_hardware_listing
from ..hardware.spans import SpanDeclaration, device_matches, parse_span_declarations
from .command_runner import CommandRunner
from .interfaces import CommandResult, HostContext, SpanAssignmentError, ToolMissingError
from .reconciler import SIGNALLING_DIRECTIVES, channel_numbers

logger = DAHDILogger().get_logger(__name__)

MOCK_ROOT = os.path.join(tempfile.gettempdir(), "dahdi_lifecycle_mock")
MOCK_PBX_PID = 4242

DEFAULT_HARDWARE = "pci:0000:04:02.0     wctdm24xxp+  d161:8005 Wildcard TDM410P\n"

DEFAULT_SYSTEM_CONF = """\
# Autogenerated by dahdi_genconf on a mock host
# Span 1: WCTDM/0 "Wildcard TDM410P"
fxoks=1-2
fxsks=3-4
echocanceller=mg2,1-4

# Global data

loadzone	= us
defaultzone	= us
"""

BASE_MODULE = "dahdi"
WAN_MODULE = "wanpipe"
CHANNEL_MODULE = "chan_dahdi.so"

GENERATED_HEADER = "# Autogenerated by dahdi_genconf on a mock host"
GLOBAL_SECTION = ["", "# Global data", "", "loadzone\t= us", "defaultzone\t= us"]

# driver -> (span label, spans per card, channels per span)
SPAN_PROFILES: Dict[str, Tuple[str, int, int]] = {
    "wctdm24xxp": ("WCTDM", 1, 4),
    "wctdm": ("WCTDM", 1, 4),
    "wcfxo": ("WCFXO", 1, 4),
    "xpp_usb": ("XBUS", 1, 4),
    "wcte12xp": ("WCT1", 1, 31),
    "wcte13xp": ("WCTE13XP", 1, 31),
    "wct4xxp": ("TE4", 2, 31),
}
DEFAULT_PROFILE = ("DAHDI", 1, 4)
E1_CHANNELS = 31


@dataclass(frozen=True)
class MockSpan:
    """One span the simulated kernel has registered"""
    span: int
    name: str
    description: str
    local_span: int
    base_channel: int
    channels: int

    def render(self) -> List[str]:
        """system.conf lines dahdi_genconf writes for this span"""
        first = self.base_channel
        last = first + self.channels - 1
        lines = [f'# Span {self.span}: {self.name} "{self.description}"']
        if self.channels == E1_CHANNELS:
            dchan = first + 15
            bchans = f"{first}-{dchan - 1},{dchan + 1}-{last}"
            lines += [
                f"span={self.span},{self.local_span},0,ccs,hdb3,crc4",
                f"bchan={bchans}",
                f"dchan={dchan}",
                f"echocanceller=mg2,{bchans}",
            ]
        else:
            lines += [
                f"fxoks={first}-{first + 1}",
                f"fxsks={first + 2}-{last}",
                f"echocanceller=mg2,{first}-{last}",
            ]
        return lines


def mock_host_context(context: HostContext, root: Optional[str] = None) -> HostContext:
    """Move every host path of a context under a private directory tree"""
    root = root or MOCK_ROOT
    conf_dir = os.path.join(root, "etc", "dahdi")
    run_dir = os.path.join(root, "run", "asterisk")
    os.makedirs(conf_dir, exist_ok=True)
    os.makedirs(run_dir, exist_ok=True)
    return dataclasses.replace(
        context,
        dahdi_config_dir=conf_dir,
        system_conf=os.path.join(conf_dir, "system.conf"),
        assigned_spans_conf=os.path.join(conf_dir, "assigned-spans.conf"),
        modules_file=os.path.join(conf_dir, "modules"),
        scratch_dir=os.path.join(root, "tmp"),
        pbx_pid_file=os.path.join(run_dir, "asterisk.pid"),
    )


@dataclass
class InjectedFailure:
    """Result forced for the next invocations starting with prefix"""
    prefix: List[str]
    exit_code: int = 1
    stderr: str = "injected failure"
    times: int = 1
    timed_out: bool = False


class MockCommandRunner(CommandRunner):
    """
    Command runner answering from a simulated host instead of spawning processes.
    """
    def __init__(
        self,
        context: HostContext,
        hardware: str = DEFAULT_HARDWARE,
        missing_tools: Iterable[str] = (),
    ):
        super().__init__(grace_period=0.01)
        self.context = context
        self.hardware = hardware
        tools = context.tools
        self.tools: Set[str] = {
            tools.modprobe, tools.lsmod, tools.service, tools.hardware,
            tools.span_assignments, tools.genconf, tools.cfg, tools.wanrouter,
            tools.asterisk,
        } - set(missing_tools)

        # Insertion order is load order
        self.modules: Dict[str, int] = {}
        self.services: Dict[str, bool] = {}
        self.pbx_running = False
        self.pbx_responsive = True
        self.pbx_modules: Set[str] = set()
        # None while the kernel numbers spans itself
        self.span_declarations: Optional[List[SpanDeclaration]] = None
        self.generator_hangs = 0
        self.calls: List[List[str]] = []
        self.failures: List[InjectedFailure] = []
        self.log = logger.bind(component="MockCommandRunner")

    def boot(self, drivers: Sequence[str] = ("wctdm24xxp",), wan: bool = False, pbx: bool = True) -> None:
        """Put the simulated host into a fully running state"""
        self._load(BASE_MODULE)
        for driver in drivers:
            self._load(driver)
        self._load("dahdi_echocan_mg2")
        self.services["dahdi"] = True
        if wan:
            self._load(WAN_MODULE)
            self.services["wanrouter"] = True
        if pbx:
            self._start_pbx()

    def fail(
        self,
        prefix: Sequence[str],
        exit_code: int = 1,
        stderr: str = "injected failure",
        times: int = 1,
        timed_out: bool = False,
    ) -> None:
        """Force the next `times` invocations starting with prefix to fail"""
        self.failures.append(InjectedFailure(list(prefix), exit_code, stderr, times, timed_out))

    def invoked(self, *prefix: str) -> bool:
        """Whether any recorded invocation starts with prefix"""
        return any(call[:len(prefix)] == list(prefix) for call in self.calls)

    def has_tool(self, command: str) -> bool:
        return command in self.tools

    def pid_alive(self, pid: int) -> bool:
        return self.pbx_running and pid == MOCK_PBX_PID

    async def terminate_pid(self, pid: int, grace: Optional[float] = None) -> bool:
        if pid == MOCK_PBX_PID:
            self._stop_pbx()
            self.log.info("mock_pbx_killed", pid=pid)
        return True

    async def run(
        self,
        command: str,
        args: Sequence[str] = (),
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        argv = [command, *args]
        self.calls.append(argv)
        if command not in self.tools:
            raise ToolMissingError(command)

        result = self._injected(argv)
        if result is None:
            result = self._dispatch(argv, env or {}, timeout)
        self.last_result = result
        self.log.debug("mock_command",
                       command=result.command_line,
                       exit_code=result.exit_code,
                       timed_out=result.timed_out)
        return result

    def _injected(self, argv: List[str]) -> Optional[CommandResult]:
        for failure in self.failures:
            if failure.times > 0 and argv[:len(failure.prefix)] == failure.prefix:
                failure.times -= 1
                return CommandResult(
                    argv,
                    -9 if failure.timed_out else failure.exit_code,
                    stderr=failure.stderr,
                    timed_out=failure.timed_out,
                )
        return None

    def _dispatch(self, argv: List[str], env: Mapping[str, str], timeout: Optional[float]) -> CommandResult:
        tools = self.context.tools
        handlers = {
            tools.lsmod: self._lsmod,
            tools.modprobe: self._modprobe,
            tools.service: self._service,
            tools.wanrouter: self._wanrouter,
            tools.hardware: self._hardware,
            tools.span_assignments: self._span_assignments,
            tools.cfg: self._cfg,
            tools.asterisk: self._asterisk,
        }
        if argv[0] == tools.genconf:
            return self._genconf(argv, env, timeout)
        return handlers[argv[0]](argv)

    # Kernel modules

    def _load(self, module: str) -> None:
        if module != BASE_MODULE and BASE_MODULE not in self.modules:
            self.modules[BASE_MODULE] = 262144
        self.modules.setdefault(module, 16384 * (len(self.modules) + 1))

    def _used_by(self, module: str) -> List[str]:
        if module != BASE_MODULE:
            return []
        return [name for name in self.modules if name != BASE_MODULE]

    def _lsmod(self, argv: List[str]) -> CommandResult:
        lines = ["Module                  Size  Used by"]
        for name, size in reversed(list(self.modules.items())):
            holders = self._used_by(name)
            lines.append(f"{name:<23} {size:>7}  {len(holders)} {','.join(holders)}".rstrip())
        return CommandResult(argv, 0, stdout="\n".join(lines) + "\n")

    def _modprobe(self, argv: List[str]) -> CommandResult:
        if len(argv) == 3 and argv[1] == "-r":
            module = argv[2]
            if module not in self.modules:
                return CommandResult(argv, 1, stderr=f"modprobe: FATAL: Module {module} is not currently loaded.\n")
            if self._used_by(module):
                return CommandResult(argv, 1, stderr=f"modprobe: FATAL: Module {module} is in use.\n")
            del self.modules[module]
            if module == BASE_MODULE:
                self.span_declarations = None
            return CommandResult(argv, 0)
        self._load(argv[1])
        return CommandResult(argv, 0)

    # Services

    def _service(self, argv: List[str]) -> CommandResult:
        name, action = argv[1], argv[2]
        if name not in ("dahdi", "wanrouter", "asterisk"):
            return CommandResult(argv, 1, stderr=f"{name}: unrecognized service\n")
        if action == "status":
            running = self.pbx_running if name == "asterisk" else self.services.get(name, False)
            return CommandResult(argv, 0 if running else 3)

        if name == "asterisk":
            if action == "start":
                self._start_pbx()
            else:
                self._stop_pbx()
        elif name == "dahdi":
            if action == "start":
                self._load(BASE_MODULE)
            else:
                for module in list(self.modules):
                    if module not in (BASE_MODULE, WAN_MODULE):
                        del self.modules[module]
            self.services[name] = action == "start"
        else:
            if action == "start" and self._wan_hardware():
                self._load(WAN_MODULE)
            self.services[name] = action == "start"
        return CommandResult(argv, 0, stdout=f"{action.capitalize()}ing {name}: done\n")

    def _wan_hardware(self) -> bool:
        return any(" 1923:" in line for line in self.hardware.splitlines())

    def _wanrouter(self, argv: List[str]) -> CommandResult:
        if argv[1:] == ["status"]:
            active = "wanpipe1" if WAN_MODULE in self.modules else "none"
            return CommandResult(argv, 0, stdout=f"Devices currently active:\n\t{active}\n")
        return CommandResult(argv, 0)

    # DAHDI utilities

    def _hardware(self, argv: List[str]) -> CommandResult:
        return CommandResult(argv, 0, stdout=self.hardware)

    def _span_assignments(self, argv: List[str]) -> CommandResult:
        if BASE_MODULE not in self.modules:
            return CommandResult(argv, 1, stderr="No DAHDI devices found\n")
        action = argv[1] if len(argv) > 1 else ""
        if action == "auto":
            self.span_declarations = None
        elif action == "remove":
            self.span_declarations = []
        elif action == "add":
            if os.path.exists(self.context.assigned_spans_conf):
                with open(self.context.assigned_spans_conf) as f:
                    text = f.read()
                try:
                    self.span_declarations = parse_span_declarations(text)
                except SpanAssignmentError as e:
                    return CommandResult(argv, 1, stderr=f"{e}\n")
        else:
            return CommandResult(argv, 1, stderr=f"Unknown action '{action}'\n")
        return CommandResult(argv, 0)

    def _devices_with_driver(self) -> List[Tuple[HardwareDevice, str]]:
        """Listed cards whose driver is loaded, with that driver"""
        found = []
        for device in parse_hardware_listing(self.hardware):
            if device.is_wan:
                continue
            driver = next((d for d in device.driver_candidates if d in self.modules), None)
            if driver is not None:
                found.append((device, driver))
        return found

    def kernel_spans(self) -> List[MockSpan]:
        """Spans currently registered, numbered automatically or from the added declarations"""
        if BASE_MODULE not in self.modules:
            return []
        spans: List[MockSpan] = []
        label_counts: Dict[str, int] = {}
        next_span, next_channel = 1, 1
        for device, driver in self._devices_with_driver():
            label, span_count, channels = SPAN_PROFILES.get(driver, DEFAULT_PROFILE)
            index = label_counts.get(label, 0)
            label_counts[label] = index + 1
            for local_span in range(1, span_count + 1):
                name = f"{label}/{index}" + (f"/{local_span}" if span_count > 1 else "")
                if self.span_declarations is None:
                    spans.append(MockSpan(next_span, name, device.description, local_span, next_channel, channels))
                    next_span += 1
                    next_channel += channels
                    continue
                for declaration in self.span_declarations:
                    if declaration.local_span == local_span and device_matches(declaration.device, device.bus_address):
                        spans.append(MockSpan(declaration.span, name, device.description, local_span,
                                              declaration.base_channel, channels))
        return sorted(spans, key=lambda s: s.span)

    def render_system_conf(self) -> str:
        lines = [GENERATED_HEADER]
        for index, span in enumerate(self.kernel_spans()):
            if index:
                lines.append("")
            lines.extend(span.render())
        return "\n".join(lines + GLOBAL_SECTION) + "\n"

    def _genconf(self, argv: List[str], env: Mapping[str, str], timeout: Optional[float]) -> CommandResult:
        if self.generator_hangs > 0:
            self.generator_hangs -= 1
            return CommandResult(argv, -9, timed_out=True, duration=timeout or 0.0)
        target = env.get("DAHDI_CONF_FILE", self.context.system_conf)
        with open(target, "w") as f:
            f.write(self.render_system_conf())
        return CommandResult(argv, 0)

    def _cfg(self, argv: List[str]) -> CommandResult:
        if BASE_MODULE not in self.modules:
            return CommandResult(argv, 1, stderr="Unable to open master device '/dev/dahdi/ctl'\n")
        return CommandResult(argv, 0)

    # PBX

    def _start_pbx(self) -> None:
        self.pbx_running = True
        self.pbx_responsive = True
        self.pbx_modules = {CHANNEL_MODULE} if BASE_MODULE in self.modules else set()
        os.makedirs(os.path.dirname(self.context.pbx_pid_file), exist_ok=True)
        with open(self.context.pbx_pid_file, "w") as f:
            f.write(f"{MOCK_PBX_PID}\n")

    def _stop_pbx(self) -> None:
        self.pbx_running = False
        self.pbx_modules = set()
        if os.path.exists(self.context.pbx_pid_file):
            os.unlink(self.context.pbx_pid_file)

    def _voice_channels(self) -> List[int]:
        try:
            with open(self.context.system_conf) as f:
                text = f.read()
        except OSError:
            return []
        return sorted(channel_numbers(text, exclude=SIGNALLING_DIRECTIVES))

    def _asterisk(self, argv: List[str]) -> CommandResult:
        if not self.pbx_running:
            return CommandResult(
                argv, 1,
                stderr="Unable to connect to remote asterisk (does /var/run/asterisk/asterisk.ctl exist?)\n",
            )
        if not self.pbx_responsive:
            return CommandResult(argv, -9, timed_out=True)

        console = argv[2] if len(argv) > 2 else ""
        words = console.split()
        if console == "core show version":
            return CommandResult(argv, 0, stdout="Asterisk 20.5.0 built by mock @ localhost on a x86_64 running Linux\n")
        if words[:3] == ["module", "show", "like"]:
            rows = ["Module                         Description                              Use Count  Status      Support Level"]
            if words[3] in self.pbx_modules:
                rows.append(f"{words[3]:<31}DAHDI Telephony                          0          Running              core")
            rows.append(f"{len(rows) - 1} modules loaded")
            return CommandResult(argv, 0, stdout="\n".join(rows) + "\n")
        if words[:2] == ["module", "unload"]:
            if words[2] not in self.pbx_modules:
                return CommandResult(argv, 0, stdout=f"Unable to unload resource {words[2]}\n")
            self.pbx_modules.discard(words[2])
            return CommandResult(argv, 0, stdout=f"Unloaded {words[2]}\n")
        if words[:2] == ["module", "load"]:
            if BASE_MODULE not in self.modules:
                return CommandResult(argv, 0, stdout=f"Unable to load module {words[2]}\n")
            self.pbx_modules.add(words[2])
            return CommandResult(argv, 0, stdout=f"Loaded {words[2]}\n")
        if console == "dahdi show channels":
            if CHANNEL_MODULE not in self.pbx_modules:
                return CommandResult(argv, 0, stdout="No such command 'dahdi show channels'\n")
            rows = ["   Chan Extension  Context         Language   MOH Interpret        Blocked    In Service",
                    " pseudo            default                    default                         In Service"]
            rows.extend(f"{channel:>7}            from-pstn       en         default                         In Service"
                        for channel in self._voice_channels())
            return CommandResult(argv, 0, stdout="\n".join(rows) + "\n")
        return CommandResult(argv, 0, stdout=f"No such command '{console}'\n")
