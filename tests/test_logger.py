import json
import logging

import pytest

from dahdi_lifecycle.utils.logger import DAHDILogger, LoggerConfig, log_function_call


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "logs" / "lifecycle.log"
    DAHDILogger().configure(LoggerConfig(level="DEBUG", format="json", output_file=str(path)))
    yield path
    DAHDILogger().configure(LoggerConfig())


def read_events(path):
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_json_file_output(log_file):
    log = DAHDILogger().get_logger("tests").bind(component="Test")
    log.info("unit_stopped", unit="dahdi-service", module="dahdi")

    event = read_events(log_file)[-1]
    assert event["message"] == "unit_stopped"
    assert event["levelname"] == "INFO"
    assert event["component"] == "Test"
    assert event["unit"] == "dahdi-service"
    assert event["ctx_module"] == "dahdi"


async def test_log_function_call_on_coroutine(log_file):
    @log_function_call(level="INFO")
    async def answer():
        return 42

    assert await answer() == 42
    events = [e["message"] for e in read_events(log_file)]
    assert events[-2:] == ["function_call_start", "function_call_complete"]


def test_log_function_call_reraises(log_file):
    @log_function_call()
    def broken():
        raise ValueError("no spans")

    with pytest.raises(ValueError):
        broken()
    assert read_events(log_file)[-1]["message"] == "function_call_failed"
