from dahdi_lifecycle.core.mock_command_runner import DEFAULT_SYSTEM_CONF, MockCommandRunner
from dahdi_lifecycle.core.reconciler import generated_spans

QUAD_E1 = "pci:0000:03:00.0     wct4xxp+     d161:0420 Wildcard TE420 (5th Gen)\n"


async def genconf(runner):
    result = await runner.run("dahdi_genconf", ["system"])
    assert result.ok
    with open(runner.context.system_conf) as f:
        return f.read()


async def test_generator_renders_loaded_cards(mock_runner):
    mock_runner.boot(pbx=False)
    assert await genconf(mock_runner) == DEFAULT_SYSTEM_CONF


async def test_generator_sees_no_spans_without_base_module(mock_runner):
    text = await genconf(mock_runner)
    assert generated_spans(text) == {}
    assert "loadzone" in text


async def test_multi_span_card(context):
    runner = MockCommandRunner(context, hardware=QUAD_E1)
    runner.boot(drivers=("wct4xxp",), pbx=False)
    text = await genconf(runner)
    assert generated_spans(text) == {1: 1, 2: 32}
    assert '# Span 2: TE4/0/2 "Wildcard TE420 (5th Gen)"' in text
    assert "dchan=47" in text


async def test_declared_spans_replace_automatic_numbering(mock_runner, context):
    mock_runner.boot(pbx=False)
    with open(context.assigned_spans_conf, "w") as f:
        f.write("pci:0000:04:02.0 1:4:13\n")

    await mock_runner.run("dahdi_span_assignments", ["remove"])
    assert generated_spans(await genconf(mock_runner)) == {}
    await mock_runner.run("dahdi_span_assignments", ["add"])
    assert generated_spans(await genconf(mock_runner)) == {4: 13}

    await mock_runner.run("modprobe", ["-r", "wctdm24xxp"])
    await mock_runner.run("modprobe", ["-r", "dahdi_echocan_mg2"])
    await mock_runner.run("modprobe", ["-r", "dahdi"])
    assert mock_runner.span_declarations is None
