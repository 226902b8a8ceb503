import os

import pytest

from dahdi_lifecycle.core.interfaces import AssignmentSource, DriftClassification, GenerationError, SpanPolicy
from dahdi_lifecycle.core.mock_command_runner import DEFAULT_SYSTEM_CONF
from dahdi_lifecycle.core.reconciler import (
    SIGNALLING_DIRECTIVES,
    ConfigReconciler,
    ReconciliationResult,
    assignment_problems,
    channel_numbers,
    classify,
    diff_lines,
    generated_spans,
    parse_channel_range,
    span_numbers,
)
from dahdi_lifecycle.hardware.discovery import HardwareDevice
from dahdi_lifecycle.hardware.spans import SpanAssignment, SpanAssignmentResolver

PRI_CONF = """\
span=1,1,0,ccs,hdb3,crc4
bchan=1-15,17-31
dchan=16
echocanceller=mg2,1-15,17-31
loadzone = nl
defaultzone = nl
"""


def drift(active, expected):
    return classify(diff_lines(active, expected), active, expected)


@pytest.fixture
def reconciler(mock_runner, context):
    mock_runner.boot(pbx=False)
    return ConfigReconciler(mock_runner, context)


def write_active(context, text):
    with open(context.system_conf, "w") as f:
        f.write(text)


def test_parse_channel_range():
    assert parse_channel_range("1-3,5") == {1, 2, 3, 5}
    assert parse_channel_range("7") == {7}


def test_channel_and_span_numbers():
    assert channel_numbers(PRI_CONF) == set(range(1, 32))
    assert channel_numbers(PRI_CONF, exclude=SIGNALLING_DIRECTIVES) == set(range(1, 32)) - {16}
    assert span_numbers(PRI_CONF) == {1}


def test_identical_is_clean():
    assert drift(PRI_CONF, PRI_CONF) == DriftClassification.CLEAN


def test_comment_and_zone_changes_are_benign():
    expected = "# generated on another day\n" + PRI_CONF.replace("nl", "us")
    assert drift(PRI_CONF, expected) == DriftClassification.BENIGN_DRIFT


def test_reformatted_channels_are_benign():
    expected = PRI_CONF.replace("bchan=1-15,17-31", "bchan=1-15\nbchan=17-31")
    assert drift(PRI_CONF, expected) == DriftClassification.BENIGN_DRIFT


def test_changed_channel_count_is_dangerous():
    expected = PRI_CONF.replace("bchan=1-15,17-31", "bchan=1-15,17-23")
    assert drift(PRI_CONF, expected) == DriftClassification.DANGEROUS_DRIFT


def test_span_signalling_change_is_benign():
    expected = PRI_CONF.replace("span=1,1,0,ccs,hdb3,crc4", "span=1,1,0,cas,hdb3")
    assert drift(PRI_CONF, expected) == DriftClassification.BENIGN_DRIFT


def test_span_renumbering_is_dangerous():
    expected = PRI_CONF.replace("span=1,1,0,ccs,hdb3,crc4", "span=2,1,0,ccs,hdb3,crc4")
    assert drift(PRI_CONF, expected) == DriftClassification.DANGEROUS_DRIFT


def test_unknown_line_is_dangerous():
    assert drift(PRI_CONF, PRI_CONF + "something odd\n") == DriftClassification.DANGEROUS_DRIFT


async def test_first_install(reconciler, context):
    result = await reconciler.reconcile([])
    assert result.classification == DriftClassification.CLEAN
    assert result.installed
    with open(context.system_conf) as f:
        assert f.read() == DEFAULT_SYSTEM_CONF

    again = await reconciler.reconcile([])
    assert again.classification == DriftClassification.CLEAN
    assert not again.installed


async def test_hand_edited_config_is_never_overwritten(reconciler, context):
    edited = DEFAULT_SYSTEM_CONF.replace("fxsks=3-4", "fxsks=3")
    write_active(context, edited)
    result = await reconciler.reconcile([])
    assert result.classification == DriftClassification.DANGEROUS_DRIFT
    assert any(str(line) == "+fxsks=3-4" for line in result.delta)
    with open(context.system_conf) as f:
        assert f.read() == edited


async def test_generator_hang_is_retried_once(reconciler, mock_runner, context):
    write_active(context, DEFAULT_SYSTEM_CONF)
    mock_runner.generator_hangs = 1
    result = await reconciler.reconcile([])
    assert result.classification == DriftClassification.CLEAN
    assert len([c for c in mock_runner.calls if c[0] == "dahdi_genconf"]) == 2


async def test_generator_hanging_twice_fails(reconciler, mock_runner, context):
    write_active(context, DEFAULT_SYSTEM_CONF)
    mock_runner.generator_hangs = 2
    with pytest.raises(GenerationError) as exc_info:
        await reconciler.reconcile([])
    assert exc_info.value.command.timed_out
    assert not os.path.exists(reconciler.scratch_path)


async def test_generator_failure(reconciler, mock_runner):
    mock_runner.fail(["dahdi_genconf"], exit_code=2, stderr="no spans found")
    with pytest.raises(GenerationError):
        await reconciler.reconcile([])


async def test_scratch_file_is_removed(reconciler, context):
    write_active(context, DEFAULT_SYSTEM_CONF)
    await reconciler.reconcile([])
    assert not os.path.exists(reconciler.scratch_path)


async def test_software_only_skips_generation(reconciler, mock_runner):
    result = await reconciler.reconcile([], software_only=True)
    assert result.skipped
    assert result.classification == DriftClassification.CLEAN
    assert not mock_runner.invoked("dahdi_genconf")


async def test_dry_run_never_installs(reconciler, context):
    result = await reconciler.reconcile([], dry_run=True)
    assert result.classification == DriftClassification.BENIGN_DRIFT
    assert not result.installed
    assert not os.path.exists(context.system_conf)


async def test_unassigned_device_is_benign(reconciler, context):
    write_active(context, DEFAULT_SYSTEM_CONF)
    device = HardwareDevice("pci:0000:05:00.0", ["wctdm24xxp"], "d161:8005")
    result = await reconciler.reconcile([], unassigned=[device])
    assert result.classification == DriftClassification.BENIGN_DRIFT
    assert result.warnings == ["Device left unassigned: pci:0000:05:00.0"]


def test_expected_voice_channels(reconciler):
    result = ReconciliationResult(PRI_CONF, PRI_CONF, [], DriftClassification.CLEAN)
    assert 16 in result.expected_channels
    assert 16 not in result.expected_voice_channels


DEVICE = "pci:0000:04:02.0"


def declared(span, base_channel, device=DEVICE):
    return SpanAssignment(span, device, AssignmentSource.MANUAL, (span,), base_channel)


def test_generated_spans():
    assert generated_spans(DEFAULT_SYSTEM_CONF) == {1: 1}
    assert generated_spans(PRI_CONF) == {1: 1}
    two_spans = DEFAULT_SYSTEM_CONF + '# Span 2: WCT1/0 "T1"\nspan=2,0,0,esf,b8zs\nbchan=25-47\ndchan=48\n'
    assert generated_spans(two_spans) == {1: 1, 2: 25}
    assert generated_spans("# Global data\nloadzone = us\n") == {}


def test_declared_layout_must_match():
    assert assignment_problems([declared(1, 1)], {1: 1}) == []
    assert assignment_problems([declared(2, 5)], {1: 1}) == [
        "Declared spans missing from the generated configuration: [2]",
        "Generated configuration has undeclared spans: [1]",
    ]
    assert assignment_problems([declared(1, 5)], {1: 1}) == [
        "Span 1 of pci:0000:04:02.0 starts at channel 1, declared 5",
    ]


def test_automatic_assignments_need_spans():
    auto = SpanAssignment(1, DEVICE, AssignmentSource.AUTO, (1,))
    assert assignment_problems([auto], {1: 1}) == []
    assert assignment_problems([auto], {}) == ["Generator produced no spans for 1 assigned device(s)"]
    assert assignment_problems([], {}) == []


async def test_unloaded_stack_is_never_installed(reconciler, mock_runner, context):
    mock_runner.modules.clear()
    auto = SpanAssignment(1, DEVICE, AssignmentSource.AUTO, (1,))
    result = await reconciler.reconcile([auto])
    assert result.classification == DriftClassification.DANGEROUS_DRIFT
    assert not result.installed
    assert generated_spans(result.expected_config) == {}
    assert not os.path.exists(context.system_conf)


async def test_bindings_change_expected_config(reconciler, mock_runner, context):
    automatic = await reconciler.reconcile([], dry_run=True)

    with open(context.assigned_spans_conf, "w") as f:
        f.write(f"{DEVICE} 1:3:9\n")
    await SpanAssignmentResolver(context, mock_runner).apply(SpanPolicy.MANUAL)
    manual = await reconciler.reconcile([declared(3, 9)], dry_run=True)

    assert automatic.expected_config != manual.expected_config
    assert generated_spans(automatic.expected_config) == {1: 1}
    assert generated_spans(manual.expected_config) == {3: 9}
    assert "fxoks=9-10" in manual.expected_config
    assert manual.classification == DriftClassification.BENIGN_DRIFT


async def test_declared_spans_the_kernel_did_not_bind_are_dangerous(reconciler, context):
    write_active(context, DEFAULT_SYSTEM_CONF)
    result = await reconciler.reconcile([declared(3, 9)])
    assert result.classification == DriftClassification.DANGEROUS_DRIFT
    assert result.delta == []
    assert "Declared spans missing from the generated configuration: [3]" in result.warnings
