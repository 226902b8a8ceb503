# src/dahdi_lifecycle/core/reconciler.py
"""
Channel configuration reconciliation.
Generates the expected DAHDI system.conf into a scratch file, compares it line by
line with the active configuration and classifies the difference. The generated
span layout is checked against the span assignments of the run. The active
configuration is only ever read, except on first install when none exists yet.
"""

import difflib
import os
import re
import shutil
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import aiofiles

from ..utils.config import ReconcilerConfig
from ..utils.logger import DAHDILogger, log_function_call
from ..hardware.discovery import HardwareDevice
from ..hardware.spans import SpanAssignment
from .interfaces import (
    AssignmentSource,
    CommandExecutor,
    CommandResult,
    DriftClassification,
    GenerationError,
    HostContext,
)

logger = DAHDILogger().get_logger(__name__)

GENERATION_ATTEMPTS = 2

SAFE_DIRECTIVES = frozenset({"loadzone", "defaultzone", "echocanceller"})
CHANNEL_DIRECTIVES = frozenset({
    "bchan", "dchan", "hardhdlc", "fxoks", "fxsks", "fxols", "fxsls",
    "fxogs", "fxsgs", "e&m", "e&me1", "cas", "clear", "indclear",
})
SPAN_DIRECTIVE = "span"
# Signalling channels the PBX never lists as voice channels
SIGNALLING_DIRECTIVES = frozenset({"dchan", "hardhdlc"})

_DIRECTIVE = re.compile(r"^\s*([A-Za-z&0-9]+)\s*=\s*(.*)$")
_SPAN_HEADER = re.compile(r"^#\s*Span\s+(\d+)\s*:")


@dataclass(frozen=True)
class DeltaLine:
    """One changed line; '-' only in the active config, '+' only in the expected one"""
    op: str
    line_no: int
    text: str

    def __str__(self) -> str:
        return f"{self.op}{self.text}"


@dataclass
class ReconciliationResult:
    """Outcome of one reconciliation run"""
    expected_config: str
    active_config: str
    delta: List[DeltaLine]
    classification: DriftClassification
    warnings: List[str] = field(default_factory=list)
    skipped: bool = False
    installed: bool = False

    @property
    def expected_channels(self) -> Set[int]:
        return channel_numbers(self.expected_config)

    @property
    def expected_voice_channels(self) -> Set[int]:
        return channel_numbers(self.expected_config, exclude=SIGNALLING_DIRECTIVES)

    def diff_text(self) -> str:
        return "\n".join(str(line) for line in self.delta)


def _directive(line: str) -> Optional[Tuple[str, str]]:
    match = _DIRECTIVE.match(line)
    if match is None:
        return None
    return match.group(1).lower(), match.group(2).strip()


def _is_comment(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#") or stripped.startswith(";")


def parse_channel_range(value: str) -> Set[int]:
    """Expand a DAHDI channel list such as '1-15,17-31' into channel numbers"""
    channels: Set[int] = set()
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            first, last = part.split("-", 1)
            channels.update(range(int(first), int(last) + 1))
        else:
            channels.add(int(part))
    return channels


def channel_numbers(config_text: str, exclude: Iterable[str] = ()) -> Set[int]:
    """All channel numbers configured by channel directives, minus the excluded directives"""
    skipped = set(exclude)
    channels: Set[int] = set()
    for line in config_text.splitlines():
        if _is_comment(line):
            continue
        parsed = _directive(line)
        if parsed and parsed[0] in CHANNEL_DIRECTIVES and parsed[0] not in skipped:
            try:
                channels |= parse_channel_range(parsed[1])
            except ValueError:
                logger.warning("channel_range_unparsed", line=line.strip())
    return channels


def span_numbers(config_text: str) -> Set[int]:
    """Span numbers configured by span= directives"""
    spans: Set[int] = set()
    for line in config_text.splitlines():
        if _is_comment(line):
            continue
        parsed = _directive(line)
        if parsed and parsed[0] == SPAN_DIRECTIVE:
            head = parsed[1].split(",", 1)[0].strip()
            if head.isdigit():
                spans.add(int(head))
    return spans


def generated_spans(config_text: str) -> Dict[int, Optional[int]]:
    """
    Span layout of a generated configuration: span number -> first channel.
    The generator opens every span with a '# Span N:' comment; span= directives
    are honoured as well. A span without channel directives maps to None.
    """
    layout: Dict[int, Optional[int]] = {}
    current: Optional[int] = None
    for line in config_text.splitlines():
        header = _SPAN_HEADER.match(line.strip())
        if header:
            current = int(header.group(1))
            layout.setdefault(current, None)
            continue
        if _is_comment(line):
            continue
        parsed = _directive(line)
        if parsed is None:
            continue
        key, value = parsed
        if key == SPAN_DIRECTIVE:
            head = value.split(",", 1)[0].strip()
            if head.isdigit():
                current = int(head)
                layout.setdefault(current, None)
        elif key in CHANNEL_DIRECTIVES and current is not None:
            try:
                channels = parse_channel_range(value)
            except ValueError:
                continue
            if channels:
                first = layout[current]
                layout[current] = min(channels) if first is None else min(first, min(channels))
    return layout


def assignment_problems(
    assignments: Sequence[SpanAssignment],
    layout: Mapping[int, Optional[int]],
) -> List[str]:
    """
    Ways a generated span layout contradicts the span assignments of this run.

    Declared spans must all be generated, nothing else may be, and each device's
    first span must start at its declared base channel. Automatic assignments
    leave numbering to the kernel, so they only require that spans exist.
    """
    if not assignments:
        return []
    manual = [a for a in assignments if a.source == AssignmentSource.MANUAL]
    if not manual:
        if not layout:
            return [f"Generator produced no spans for {len(assignments)} assigned device(s)"]
        return []

    problems = []
    declared: Set[int] = set()
    for assignment in manual:
        declared.update(assignment.spans)
        if not assignment.spans or assignment.base_channel is None:
            continue
        first_span = assignment.spans[0]
        if first_span in layout and layout[first_span] != assignment.base_channel:
            problems.append(
                f"Span {first_span} of {assignment.device_ref} starts at channel "
                f"{layout[first_span]}, declared {assignment.base_channel}"
            )
    missing = sorted(declared - set(layout))
    if missing:
        problems.append(f"Declared spans missing from the generated configuration: {missing}")
    undeclared = sorted(set(layout) - declared)
    if undeclared:
        problems.append(f"Generated configuration has undeclared spans: {undeclared}")
    return problems


def diff_lines(active: str, expected: str) -> List[DeltaLine]:
    """Line-level delta ignoring trailing whitespace"""
    active_lines = [line.rstrip() for line in active.splitlines()]
    expected_lines = [line.rstrip() for line in expected.splitlines()]
    delta: List[DeltaLine] = []
    matcher = difflib.SequenceMatcher(a=active_lines, b=expected_lines, autojunk=False)
    for tag, a1, a2, b1, b2 in matcher.get_opcodes():
        if tag == "equal":
            continue
        delta.extend(DeltaLine("-", i + 1, active_lines[i]) for i in range(a1, a2))
        delta.extend(DeltaLine("+", j + 1, expected_lines[j]) for j in range(b1, b2))
    return delta


def classify(delta: Sequence[DeltaLine], active: str, expected: str) -> DriftClassification:
    """
    CLEAN when nothing changed, BENIGN_DRIFT when every changed line is a
    comment, a zone/echo canceller setting, or a span/channel line while the
    configured span and channel numbers stay the same; DANGEROUS_DRIFT otherwise.
    """
    if not delta:
        return DriftClassification.CLEAN

    slots_match = None
    for line in delta:
        if _is_comment(line.text):
            continue
        parsed = _directive(line.text)
        if parsed is None:
            return DriftClassification.DANGEROUS_DRIFT
        key = parsed[0]
        if key in SAFE_DIRECTIVES:
            continue
        if key in CHANNEL_DIRECTIVES or key == SPAN_DIRECTIVE:
            if slots_match is None:
                slots_match = (
                    span_numbers(active) == span_numbers(expected)
                    and channel_numbers(active) == channel_numbers(expected)
                )
            if slots_match:
                continue
        return DriftClassification.DANGEROUS_DRIFT
    return DriftClassification.BENIGN_DRIFT


class ConfigReconciler:
    """
    Generates the expected channel configuration and compares it with the active one.
    """
    def __init__(self, runner: CommandExecutor, context: HostContext, config: Optional[ReconcilerConfig] = None):
        self.runner = runner
        self.context = context
        self.config = config or ReconcilerConfig()
        self.last_command: Optional[CommandResult] = None
        self.log = logger.bind(component="ConfigReconciler", active_config=context.system_conf)

    @property
    def scratch_path(self) -> str:
        return os.path.join(self.context.scratch_dir, f"system.conf.{os.getpid()}")

    def skip(self, reason: str, warnings: Sequence[str] = ()) -> ReconciliationResult:
        """Result for a run that generates nothing"""
        self.log.info("reconcile_skipped", reason=reason)
        return ReconciliationResult(
            expected_config="",
            active_config="",
            delta=[],
            classification=DriftClassification.CLEAN,
            warnings=list(warnings),
            skipped=True,
        )

    @log_function_call(level="DEBUG")
    async def reconcile(
        self,
        assignments: Sequence[SpanAssignment],
        unassigned: Iterable[HardwareDevice] = (),
        software_only: bool = False,
        dry_run: bool = False,
    ) -> ReconciliationResult:
        """
        Generate, check the generated span layout against the assignments, diff
        and classify. The generator reads the spans the kernel has registered,
        so the assignments must have been applied before this runs.

        Args:
            assignments: Span assignments of this run
            unassigned: Devices a manual declaration left without a slot
            software_only: No hardware present; nothing to generate
            dry_run: Never install a missing active configuration

        Returns:
            ReconciliationResult for the orchestrator to act on

        Raises:
            GenerationError: If the generator fails or hangs on both attempts
        """
        warnings = [f"Device left unassigned: {device.bus_address}" for device in unassigned]

        if software_only:
            return self.skip("software_only", warnings)

        os.makedirs(self.context.scratch_dir, exist_ok=True)
        scratch = self.scratch_path
        if os.path.exists(scratch):
            os.unlink(scratch)
        try:
            await self._generate(scratch)
            expected = await self._read(scratch)
            problems = assignment_problems(assignments, generated_spans(expected))
            if problems:
                self.log.error("span_layout_mismatch", problems=problems)
                warnings.extend(problems)

            if not os.path.exists(self.context.system_conf):
                return await self._first_install(scratch, expected, warnings, dry_run, mismatched=bool(problems))

            active = await self._read(self.context.system_conf)
        finally:
            if os.path.exists(scratch):
                os.unlink(scratch)

        delta = diff_lines(active, expected)
        classification = classify(delta, active, expected)
        if problems:
            classification = DriftClassification.DANGEROUS_DRIFT
        elif classification == DriftClassification.CLEAN and warnings:
            classification = DriftClassification.BENIGN_DRIFT

        self.log.info("reconcile_complete",
                      classification=classification.value,
                      delta_lines=len(delta),
                      assignments=len(assignments),
                      warnings=warnings)
        if classification == DriftClassification.DANGEROUS_DRIFT:
            self.log.error("dangerous_drift", diff=[str(line) for line in delta])
        return ReconciliationResult(
            expected_config=expected,
            active_config=active,
            delta=delta,
            classification=classification,
            warnings=warnings,
        )

    async def _first_install(
        self,
        scratch: str,
        expected: str,
        warnings: List[str],
        dry_run: bool,
        mismatched: bool = False,
    ) -> ReconciliationResult:
        """No active configuration exists yet: install the generated one"""
        if mismatched or dry_run or not self.config.install_if_missing:
            self.log.warning("active_config_missing", path=self.context.system_conf, installable=not mismatched)
            benign = self.config.install_if_missing and not mismatched
            return ReconciliationResult(
                expected_config=expected,
                active_config="",
                delta=diff_lines("", expected),
                classification=(
                    DriftClassification.BENIGN_DRIFT if benign
                    else DriftClassification.DANGEROUS_DRIFT
                ),
                warnings=warnings + [f"{self.context.system_conf} does not exist"],
            )
        shutil.copyfile(scratch, self.context.system_conf)
        self.log.info("active_config_installed", path=self.context.system_conf)
        return ReconciliationResult(
            expected_config=expected,
            active_config=expected,
            delta=[],
            classification=(
                DriftClassification.BENIGN_DRIFT if warnings else DriftClassification.CLEAN
            ),
            warnings=warnings,
            installed=True,
        )

    async def _generate(self, scratch: str) -> CommandResult:
        """
        Run the generator into the scratch file.
        A hang is killed by the runner and retried once; a second hang or any
        non-zero exit is fatal.
        """
        tool = self.context.tools.genconf
        env = {self.config.generator_env: scratch}
        for attempt in range(1, GENERATION_ATTEMPTS + 1):
            result = await self.runner.run(
                tool,
                self.config.generator_args,
                timeout=self.config.generator_timeout,
                env=env,
            )
            self.last_command = result
            if result.timed_out:
                self.log.warning("generator_killed", attempt=attempt, timeout=self.config.generator_timeout)
                continue
            if not result.ok:
                raise GenerationError(f"{tool} exited with status {result.exit_code}", result)
            if not os.path.exists(scratch):
                raise GenerationError(f"{tool} did not write {scratch}", result)
            return result
        raise GenerationError(
            f"{tool} hung {GENERATION_ATTEMPTS} times and was killed", self.last_command
        )

    @staticmethod
    async def _read(path: str) -> str:
        async with aiofiles.open(path) as f:
            return await f.read()
