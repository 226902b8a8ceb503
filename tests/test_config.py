import pytest

from dahdi_lifecycle.utils.config import Config, ConfigurationError


def write_yaml(tmp_path, text):
    path = tmp_path / "config.yml"
    path.write_text(text)
    return path


def test_defaults():
    config = Config()
    config.load()
    assert config.host.system_conf == "/etc/dahdi/system.conf"
    assert config.lifecycle.step_retries == 1
    assert config.lifecycle.wan_modules == ["wanpipe"]
    assert config.spans.policy == "detect"
    assert config.pbx.channel_module == "chan_dahdi.so"
    assert not config.development.mock_hardware


def test_singleton():
    assert Config() is Config()


def test_override_file_is_merged(tmp_path):
    path = write_yaml(tmp_path, """
lifecycle:
  step_timeout: 90
  wan_modules: wanpipe
spans:
  policy: manual
hardware:
  signatures:
    "e159:0001": [wcfxo]
""")
    config = Config()
    config.load(path)
    assert config.lifecycle.step_timeout == 90.0
    assert isinstance(config.lifecycle.step_timeout, float)
    assert config.lifecycle.wan_modules == ["wanpipe"]
    assert config.lifecycle.base_module == "dahdi"
    assert config.spans.policy == "manual"
    assert config.hardware.signatures == {"e159:0001": ["wcfxo"]}


def test_unknown_key(tmp_path):
    path = write_yaml(tmp_path, "lifecycle:\n  step_timout: 5\n")
    with pytest.raises(ConfigurationError, match="step_timout"):
        Config().load(path)


def test_development_section_only_switches_mock_hardware(tmp_path):
    path = write_yaml(tmp_path, "development:\n  enabled: true\n")
    with pytest.raises(ConfigurationError, match="enabled"):
        Config().load(path)


def test_bad_type(tmp_path):
    path = write_yaml(tmp_path, "lifecycle:\n  step_timeout: fast\n")
    with pytest.raises(ConfigurationError, match="lifecycle.step_timeout"):
        Config().load(path)


def test_invalid_policy(tmp_path):
    path = write_yaml(tmp_path, "spans:\n  policy: sometimes\n")
    with pytest.raises(ConfigurationError):
        Config().load(path)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        Config().load(tmp_path / "absent.yml")


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DAHDI_LIFECYCLE_STEP_RETRIES", "3")
    monkeypatch.setenv("DAHDI_LIFECYCLE_MOCK", "yes")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    config = Config()
    config.load()
    assert config.lifecycle.step_retries == 3
    assert config.development.mock_hardware
    assert config.logging.level == "DEBUG"


def test_bad_environment_value(monkeypatch):
    monkeypatch.setenv("DAHDI_LIFECYCLE_STEP_RETRIES", "many")
    with pytest.raises(ConfigurationError, match="DAHDI_LIFECYCLE_STEP_RETRIES"):
        Config().load()
