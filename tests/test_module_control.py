import pytest

from dahdi_lifecycle.core.interfaces import OrderingViolation, ServiceControlError
from dahdi_lifecycle.core.module_control import (
    ModuleController,
    ServiceStatus,
    parse_lsmod,
    service_status_from_exit,
)
from dahdi_lifecycle.core.module_graph import DRIVERS_UNIT, SERVICE_UNIT, default_graph
from dahdi_lifecycle.utils.config import LifecycleConfig

LSMOD_OUTPUT = """\
Module                  Size  Used by
dahdi_echocan_mg2      16384  0
wctdm24xxp             73728  0
dahdi                 262144  2 wctdm24xxp,dahdi_echocan_mg2
crc_ccitt              16384  1 dahdi
ip_tables              32768  0 [permanent]
"""


@pytest.fixture
def controller(mock_runner, context):
    return ModuleController(mock_runner, context, LifecycleConfig(step_timeout=5.0))


def test_parse_lsmod():
    modules = parse_lsmod(LSMOD_OUTPUT)
    assert set(modules) == {"dahdi_echocan_mg2", "wctdm24xxp", "dahdi", "crc_ccitt", "ip_tables"}
    assert modules["dahdi"].used_by == ["wctdm24xxp", "dahdi_echocan_mg2"]
    assert modules["dahdi"].use_count == 2
    assert modules["crc_ccitt"].used_by == ["dahdi"]
    assert modules["ip_tables"].used_by == []


def test_service_status_from_exit():
    assert service_status_from_exit(0) == ServiceStatus.RUNNING
    assert service_status_from_exit(3) == ServiceStatus.STOPPED
    assert service_status_from_exit(4) == ServiceStatus.UNKNOWN


async def test_load_is_idempotent(controller, mock_runner):
    assert await controller.load("wctdm24xxp")
    assert not await controller.load("wctdm24xxp")
    assert [c for c in mock_runner.calls if c[0] == "modprobe"] == [["modprobe", "wctdm24xxp"]]


async def test_unload_not_loaded_is_noop(controller, mock_runner):
    assert not await controller.unload("wcte12xp")
    assert not mock_runner.invoked("modprobe", "-r")


async def test_unload_refused_while_held(controller, mock_runner):
    mock_runner.boot(pbx=False)
    with pytest.raises(OrderingViolation):
        await controller.unload("dahdi")
    assert "dahdi" in mock_runner.modules
    assert not mock_runner.invoked("modprobe", "-r", "dahdi")


async def test_loaded_drivers_excludes_echocan_and_wan(controller, mock_runner):
    mock_runner.boot(drivers=("wct4xxp",), wan=True, pbx=False)
    assert await controller.loaded_drivers() == ["wct4xxp"]
    assert await controller.wan_live()


async def test_service_failure_tolerated_when_already_in_state(controller, mock_runner):
    mock_runner.fail(["service", "dahdi", "stop"])
    await controller.service("dahdi", "stop")


async def test_service_failure_raises_when_state_not_reached(controller, mock_runner):
    mock_runner.fail(["service", "dahdi", "start"], stderr="dahdi: no hardware")
    with pytest.raises(ServiceControlError) as exc_info:
        await controller.service("dahdi", "start")
    assert exc_info.value.retryable
    assert exc_info.value.command.command == ["service", "dahdi", "start"]


async def test_driver_set_is_left_to_the_service(controller, mock_runner):
    mock_runner.boot(pbx=False)
    graph = default_graph()
    await controller.stop_unit(graph.get(DRIVERS_UNIT))
    assert "wctdm24xxp" in mock_runner.modules

    await controller.stop_unit(graph.get(SERVICE_UNIT))
    assert "wctdm24xxp" not in mock_runner.modules
    assert not await controller.unit_live(graph.get(DRIVERS_UNIT))


async def test_start_driver_set_loads_in_order(controller, mock_runner):
    graph = default_graph()
    await controller.start_unit(graph.get(DRIVERS_UNIT), ["wcte12xp", "wctdm24xxp"])
    loads = [c[1] for c in mock_runner.calls if c[0] == "modprobe"]
    assert loads == ["wcte12xp", "wctdm24xxp"]
