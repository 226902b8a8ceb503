"""
Shared fixtures: a mock host rooted in a temporary directory and an
orchestrator wired to it with fast timings.
"""

import pytest

from dahdi_lifecycle.core import mock_command_runner
from dahdi_lifecycle.core.interfaces import HostContext
from dahdi_lifecycle.core.mock_command_runner import MockCommandRunner, mock_host_context
from dahdi_lifecycle.core.orchestrator import LifecycleOrchestrator
from dahdi_lifecycle.utils.config import Config, LifecycleConfig, PBXConfig


@pytest.fixture(autouse=True)
def reset_config():
    Config.reset()
    yield
    Config.reset()


@pytest.fixture
def context(tmp_path) -> HostContext:
    base = HostContext(
        kernel_version="6.1.0-test",
        dahdi_config_dir="",
        system_conf="",
        assigned_spans_conf="",
        modules_file="",
        scratch_dir="",
        pbx_pid_file="",
    )
    return mock_host_context(base, root=str(tmp_path / "host"))


@pytest.fixture
def mock_runner(context) -> MockCommandRunner:
    return MockCommandRunner(context)


@pytest.fixture
def lifecycle_config() -> LifecycleConfig:
    return LifecycleConfig(step_timeout=5.0, grace_period=0.1, settle_delay=0.0)


@pytest.fixture
def pbx_config() -> PBXConfig:
    return PBXConfig(probe_timeout=1.0, start_timeout=2.0, stop_timeout=2.0)


@pytest.fixture
def make_orchestrator(context, lifecycle_config, pbx_config):
    def factory(runner: MockCommandRunner) -> LifecycleOrchestrator:
        return LifecycleOrchestrator(runner, context, lifecycle=lifecycle_config, pbx=pbx_config)
    return factory


@pytest.fixture
def orchestrator(make_orchestrator, mock_runner) -> LifecycleOrchestrator:
    return make_orchestrator(mock_runner)


@pytest.fixture
def mock_root(tmp_path, monkeypatch):
    """Redirect the development mock host used by --mock into tmp_path"""
    root = tmp_path / "mock"
    monkeypatch.setattr(mock_command_runner, "MOCK_ROOT", str(root))
    return root
