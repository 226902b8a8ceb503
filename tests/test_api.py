import httpx
import pytest
from fastapi.testclient import TestClient

from dahdi_lifecycle.api import create_app
from dahdi_lifecycle.core.mock_command_runner import MockCommandRunner


@pytest.fixture
def app(orchestrator):
    return create_app(orchestrator=orchestrator)


@pytest.fixture
def client(app):
    return TestClient(app)


def test_status(client, mock_runner):
    mock_runner.boot()
    response = client.get("/lifecycle/status")
    assert response.status_code == 200
    body = response.json()
    assert body["phase"] == "RUNNING"
    assert body["pbx_reachable"] is True
    assert body["channel_module_loaded"] is True


def test_start(client):
    response = client.post("/lifecycle/start")
    assert response.status_code == 200
    body = response.json()
    assert body["final_phase"] == "RUNNING"
    assert body["succeeded"] is True
    assert body["devices"][0]["bus_address"] == "pci:0000:04:02.0"


def test_failed_run_is_still_a_report(client, mock_runner):
    mock_runner.generator_hangs = 2
    response = client.post("/lifecycle/restart")
    assert response.status_code == 200
    body = response.json()
    assert body["succeeded"] is False
    assert body["failed_phase"] == "CONFIGURING"
    assert body["last_command"]["timed_out"] is True


def test_stop_with_force(client, mock_runner):
    mock_runner.boot()
    response = client.post("/lifecycle/stop", params={"force": "true"})
    assert response.status_code == 200
    assert response.json()["force"] is True
    assert not mock_runner.pbx_running


def test_unknown_intent(client):
    assert client.post("/lifecycle/reboot").status_code == 422


def test_hardware(client):
    response = client.get("/hardware")
    assert response.status_code == 200
    assert response.json()[0]["driver_candidates"] == ["wctdm24xxp"]


def test_hardware_tool_missing(context, make_orchestrator):
    runner = MockCommandRunner(context, missing_tools=["dahdi_hardware"])
    client = TestClient(create_app(orchestrator=make_orchestrator(runner)))
    assert client.get("/hardware").status_code == 503


def test_reconcile_preview(client, mock_runner):
    mock_runner.boot()
    response = client.get("/reconcile")
    assert response.status_code == 200
    body = response.json()
    assert body["classification"] == "BENIGN_DRIFT"
    assert body["installed"] is False


def test_lifecycle_error_outside_a_run(context, make_orchestrator):
    runner = MockCommandRunner(context)
    runner.boot()
    runner.fail(["dahdi_genconf"], exit_code=2, stderr="no spans")
    client = TestClient(create_app(orchestrator=make_orchestrator(runner)))
    response = client.get("/reconcile")
    assert response.status_code == 502
    body = response.json()
    assert body["error_type"] == "GenerationError"
    assert body["command"] == "dahdi_genconf system"


async def test_concurrent_request_is_rejected(app):
    lock = app.state.lifecycle_lock
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        async with lock:
            response = await client.post("/lifecycle/start")
            assert response.status_code == 409
            assert (await client.get("/reconcile")).status_code == 409
        response = await client.post("/lifecycle/stop")
        assert response.status_code == 200
