# src/dahdi_lifecycle/hardware/spans.py
"""
Span assignment for discovered DAHDI hardware.
Decides per run whether spans are numbered automatically in discovery order or
taken from the administrator's assigned-spans.conf, and produces the resulting
slot bindings. Resolution is deterministic and keeps no state between runs other
than the last result.
"""

import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import aiofiles

from ..utils.logger import DAHDILogger, log_function_call
from ..core.interfaces import (
    AssignmentSource,
    CommandExecutor,
    CommandResult,
    HostContext,
    SpanAssignmentError,
    SpanPolicy,
    ToolMissingError,
)
from .discovery import HardwareDevice

logger = DAHDILogger().get_logger(__name__)


@dataclass(frozen=True)
class SpanAssignment:
    """Binding of a logical slot to one physical device"""
    slot_index: int
    device_ref: str
    source: AssignmentSource
    spans: Tuple[int, ...] = ()
    base_channel: Optional[int] = None


@dataclass(frozen=True)
class SpanDeclaration:
    """One line of assigned-spans.conf: <device> <local_span>:<span>:<base_channel>"""
    device: str
    local_span: int
    span: int
    base_channel: int
    line_no: int


def parse_span_declarations(text: str) -> List[SpanDeclaration]:
    """
    Parse assigned-spans.conf content.

    Raises:
        SpanAssignmentError: On malformed lines
    """
    declarations = []
    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        tokens = line.split()
        if len(tokens) != 2:
            raise SpanAssignmentError(f"assigned-spans line {line_no}: expected '<device> <local>:<span>:<basechan>'")
        fields = tokens[1].split(":")
        if len(fields) != 3:
            raise SpanAssignmentError(f"assigned-spans line {line_no}: bad span triple {tokens[1]}")
        try:
            local_span, span, base_channel = (int(value) for value in fields)
        except ValueError as e:
            raise SpanAssignmentError(f"assigned-spans line {line_no}: non-numeric span triple {tokens[1]}") from e
        if min(local_span, span, base_channel) < 1:
            raise SpanAssignmentError(f"assigned-spans line {line_no}: span numbers start at 1")
        declarations.append(SpanDeclaration(tokens[0], local_span, span, base_channel, line_no))
    return declarations


def device_matches(token: str, bus_address: str) -> bool:
    """
    Whether a declared device id refers to the device at bus_address.
    Accepts the bare bus address, a sysfs path ending in it, or the
    address without its bus prefix.
    """
    token = token.lstrip("@").rstrip("/")
    if token == bus_address or token.split("/")[-1] == bus_address:
        return True
    bare = bus_address.split(":", 1)[1] if bus_address[:4] in ("pci:", "usb:") else bus_address
    return token == bare or token.endswith("/" + bare)


class SpanAssignmentResolver:
    """
    Resolves span assignments from discovered devices and the active policy.
    """
    def __init__(self, context: HostContext, runner: Optional[CommandExecutor] = None, timeout: Optional[float] = 60.0):
        self.context = context
        self.runner = runner
        self.timeout = timeout
        self.assignments: List[SpanAssignment] = []
        self.unassigned: List[HardwareDevice] = []
        self.advisories: List[str] = []
        self.last_command: Optional[CommandResult] = None
        self.log = logger.bind(component="SpanAssignmentResolver")

    def read_policy(self, configured: str = "detect") -> SpanPolicy:
        """
        Decide the policy for this run.
        'detect' means MANUAL when the declaration file exists, AUTO otherwise.
        """
        declared = os.path.exists(self.context.assigned_spans_conf)
        if configured == "auto":
            policy = SpanPolicy.AUTO
        elif configured == "manual":
            if not declared:
                raise SpanAssignmentError(
                    f"Manual span policy requested but {self.context.assigned_spans_conf} does not exist"
                )
            policy = SpanPolicy.MANUAL
        else:
            policy = SpanPolicy.MANUAL if declared else SpanPolicy.AUTO
        self.log.info("span_policy", policy=policy.value, declaration_present=declared)
        return policy

    async def load_declarations(self) -> List[SpanDeclaration]:
        """Read and parse the administrator's span declaration file"""
        async with aiofiles.open(self.context.assigned_spans_conf) as f:
            text = await f.read()
        return parse_span_declarations(text)

    @log_function_call(level="DEBUG")
    def resolve(
        self,
        devices: Sequence[HardwareDevice],
        policy: SpanPolicy,
        declarations: Optional[Sequence[SpanDeclaration]] = None,
    ) -> List[SpanAssignment]:
        """
        Bind devices to slots.

        Args:
            devices: Devices in discovery order
            policy: AUTO or MANUAL
            declarations: Parsed declaration file, required for MANUAL

        Returns:
            Assignments ordered by slot index
        """
        self.assignments = []
        self.unassigned = []
        self.advisories = []
        for device in devices:
            device.span = None

        if policy == SpanPolicy.MANUAL:
            if declarations is None:
                raise SpanAssignmentError("Manual span policy requires span declarations")
            assignments = self._resolve_manual(devices, declarations)
        else:
            assignments = self._resolve_auto(devices)

        by_device = {a.device_ref: a for a in assignments}
        for device in devices:
            assignment = by_device.get(device.bus_address)
            if assignment is not None:
                device.span = assignment.slot_index

        self.assignments = sorted(assignments, key=lambda a: a.slot_index)
        self.log.info("spans_resolved",
                      policy=policy.value,
                      assigned=len(self.assignments),
                      unassigned=[d.bus_address for d in self.unassigned])
        return list(self.assignments)

    def _resolve_auto(self, devices: Sequence[HardwareDevice]) -> List[SpanAssignment]:
        if len(devices) > 1:
            advisory = (
                f"{len(devices)} spans assigned automatically; ordering is not guaranteed "
                f"to be stable across reboots, declare it in {self.context.assigned_spans_conf}"
            )
            self.advisories.append(advisory)
            self.log.warning("auto_span_order_unstable", device_count=len(devices))
        seen = set()
        assignments = []
        for index, device in enumerate(devices, start=1):
            if device.bus_address in seen:
                raise SpanAssignmentError(f"Device listed twice by discovery: {device.bus_address}")
            seen.add(device.bus_address)
            assignments.append(SpanAssignment(
                slot_index=index,
                device_ref=device.bus_address,
                source=AssignmentSource.AUTO,
                spans=(index,),
            ))
        return assignments

    def _resolve_manual(
        self,
        devices: Sequence[HardwareDevice],
        declarations: Sequence[SpanDeclaration],
    ) -> List[SpanAssignment]:
        spans_seen: Dict[int, str] = {}
        per_device: Dict[str, List[SpanDeclaration]] = {}

        for declaration in declarations:
            owner = spans_seen.get(declaration.span)
            if owner is not None:
                raise SpanAssignmentError(
                    f"Span {declaration.span} declared twice ({owner} and {declaration.device})"
                )
            spans_seen[declaration.span] = declaration.device

            device = next((d for d in devices if device_matches(declaration.device, d.bus_address)), None)
            if device is None:
                self.advisories.append(f"Declared device not present: {declaration.device}")
                self.log.warning("declared_device_missing",
                                 device=declaration.device,
                                 line_no=declaration.line_no)
                continue
            local_spans = [d.local_span for d in per_device.get(device.bus_address, [])]
            if declaration.local_span in local_spans:
                raise SpanAssignmentError(
                    f"Local span {declaration.local_span} of {device.bus_address} declared twice"
                )
            per_device.setdefault(device.bus_address, []).append(declaration)

        assignments = []
        for device in devices:
            entries = per_device.get(device.bus_address)
            if not entries:
                self.unassigned.append(device)
                self.log.warning("device_left_unassigned", bus_address=device.bus_address)
                continue
            entries = sorted(entries, key=lambda d: d.local_span)
            assignments.append(SpanAssignment(
                slot_index=min(d.span for d in entries),
                device_ref=device.bus_address,
                source=AssignmentSource.MANUAL,
                spans=tuple(d.span for d in entries),
                base_channel=entries[0].base_channel,
            ))
        return assignments

    async def apply(self, policy: SpanPolicy) -> Optional[CommandResult]:
        """
        Ask the kernel to bind spans according to the policy. A manual policy
        first drops whatever the kernel bound before.
        Skipped with a warning when the span assignment tool is not installed.
        """
        tool = self.context.tools.span_assignments
        if self.runner is None or not self.runner.has_tool(tool):
            self.log.warning("span_assignment_tool_missing", tool=tool)
            return None
        actions = ["remove", "add"] if policy == SpanPolicy.MANUAL else ["auto"]
        result = None
        for action in actions:
            try:
                result = await self.runner.run(tool, [action], timeout=self.timeout)
            except ToolMissingError:
                self.log.warning("span_assignment_tool_missing", tool=tool)
                return None
            self.last_command = result
            if not result.ok:
                raise SpanAssignmentError(f"{tool} {action} failed", result)
        self.log.info("spans_applied", actions=actions)
        return result
