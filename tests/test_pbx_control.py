import os

import pytest

from dahdi_lifecycle.core.interfaces import PBXControlError
from dahdi_lifecycle.core.pbx_control import PBXController, parse_channel_list, parse_module_count
from dahdi_lifecycle.utils.config import PBXConfig


@pytest.fixture
def pbx(mock_runner, context, pbx_config):
    return PBXController(mock_runner, context, pbx_config)


def test_parse_module_count():
    assert parse_module_count("Module  Description\nchan_dahdi.so  DAHDI Telephony\n1 modules loaded\n") == 1
    assert parse_module_count("Module  Description\n0 modules loaded\n") == 0
    assert parse_module_count("") == 0


def test_parse_channel_list():
    output = (
        "   Chan Extension  Context         Language   MOH Interpret\n"
        " pseudo            default                    default\n"
        "      1            from-pstn       en         default\n"
        "      2            from-pstn       en         default\n"
    )
    assert parse_channel_list(output) == [1, 2]


async def test_not_reachable_when_stopped(pbx):
    assert not await pbx.reachable()
    assert not await pbx.process_alive()


async def test_unload_then_load(pbx, mock_runner):
    mock_runner.boot()
    assert await pbx.reachable()
    assert await pbx.channel_module_loaded()
    assert await pbx.unload_channel_module()
    assert not await pbx.unload_channel_module()
    assert await pbx.load_channel_module()
    assert not await pbx.load_channel_module()


async def test_refused_unload(pbx, mock_runner):
    mock_runner.boot()
    mock_runner.fail(["asterisk", "-rx", "module unload chan_dahdi.so"])
    with pytest.raises(PBXControlError):
        await pbx.unload_channel_module()


async def test_load_without_base_module_fails(pbx, mock_runner):
    mock_runner.boot()
    mock_runner.pbx_modules.clear()
    mock_runner.modules.clear()
    with pytest.raises(PBXControlError):
        await pbx.load_channel_module()


async def test_channels(pbx, mock_runner, context):
    mock_runner.boot()
    with open(context.system_conf, "w") as f:
        f.write("fxoks=1-2\nfxsks=3-4\n")
    assert await pbx.channels() == [1, 2, 3, 4]


async def test_start_and_terminate(pbx, mock_runner, context):
    await pbx.start()
    assert await pbx.process_alive()
    assert os.path.exists(context.pbx_pid_file)

    await pbx.terminate()
    assert not mock_runner.pbx_running
    assert not os.path.exists(context.pbx_pid_file)


async def test_terminate_kills_survivor(pbx, mock_runner, context):
    mock_runner.boot()
    mock_runner.fail(["service", "asterisk", "stop"], timed_out=True)
    await pbx.terminate()
    assert not mock_runner.pbx_running


async def test_start_never_answering(mock_runner, context):
    pbx = PBXController(mock_runner, context, PBXConfig(probe_timeout=0.1, start_timeout=0.2))
    mock_runner.fail(["asterisk", "-rx", "core show version"], times=10)
    with pytest.raises(PBXControlError):
        await pbx.start()


async def test_unreadable_pid_file(pbx, context):
    with open(context.pbx_pid_file, "w") as f:
        f.write("not a pid\n")
    assert await pbx.read_pid() is None
    assert not await pbx.process_alive()
