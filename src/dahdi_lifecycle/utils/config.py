# src/dahdi_lifecycle/utils/config.py
"""
Configuration management for the DAHDI lifecycle orchestrator.
Handles loading and validating configuration from YAML files and environment variables.
Provides type-safe access to configuration values with comprehensive error checking.
"""

import os
import yaml
import logging
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass, field
from pathlib import Path

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "default.yml"
SYSTEM_CONFIG_PATH = Path("/etc/dahdi_lifecycle/config.yml")

@dataclass
class HostConfig:
    """Host filesystem locations"""
    dahdi_config_dir: str = "/etc/dahdi"
    system_conf: str = "/etc/dahdi/system.conf"
    assigned_spans_conf: str = "/etc/dahdi/assigned-spans.conf"
    modules_file: str = "/etc/dahdi/modules"
    scratch_dir: str = "/var/tmp/dahdi_lifecycle"
    kernel_version: Optional[str] = None

@dataclass
class ToolsConfig:
    """External command names"""
    modprobe: str = "modprobe"
    lsmod: str = "lsmod"
    service: str = "service"
    hardware: str = "dahdi_hardware"
    span_assignments: str = "dahdi_span_assignments"
    genconf: str = "dahdi_genconf"
    cfg: str = "dahdi_cfg"
    wanrouter: str = "wanrouter"
    asterisk: str = "asterisk"

@dataclass
class LifecycleConfig:
    """Step timing and retry bounds"""
    step_timeout: float = 60.0
    grace_period: float = 2.0
    step_retries: int = 1
    settle_delay: float = 1.0
    base_module: str = "dahdi"
    base_service: str = "dahdi"
    echocan_module: str = "dahdi_echocan_mg2"
    wan_service: str = "wanrouter"
    wan_modules: List[str] = field(default_factory=lambda: ["wanpipe"])

@dataclass
class PBXConfig:
    """PBX process integration parameters"""
    service: str = "asterisk"
    pid_file: str = "/var/run/asterisk/asterisk.pid"
    channel_module: str = "chan_dahdi.so"
    probe_timeout: float = 5.0
    start_timeout: float = 30.0
    stop_timeout: float = 30.0
    verify_channels: bool = True

@dataclass
class SpansConfig:
    """Span assignment policy"""
    policy: str = "detect"

@dataclass
class ReconcilerConfig:
    """Configuration generation and diff parameters"""
    generator_args: List[str] = field(default_factory=lambda: ["system"])
    generator_env: str = "DAHDI_CONF_FILE"
    generator_timeout: float = 30.0
    install_if_missing: bool = True

@dataclass
class HardwareConfig:
    """Additional hardware signature to driver mappings"""
    signatures: Dict[str, List[str]] = field(default_factory=dict)

@dataclass
class LogConfig:
    """Logging configuration parameters"""
    level: str = "INFO"
    format: str = "console"
    output: Optional[str] = None
    max_bytes: int = 10_485_760
    backup_count: int = 5

@dataclass
class ServerConfig:
    """Control API server configuration parameters"""
    host: str = "127.0.0.1"
    port: int = 8010

@dataclass
class DevelopmentConfig:
    """Development configuration parameters"""
    mock_hardware: bool = False

class ConfigurationError(Exception):
    """Custom exception for configuration errors"""
    pass

class Config:
    """
    Central configuration management for the lifecycle orchestrator.
    Handles loading, validation, and access to configuration values.
    """
    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.host = HostConfig()
            self.tools = ToolsConfig()
            self.lifecycle = LifecycleConfig()
            self.pbx = PBXConfig()
            self.spans = SpansConfig()
            self.reconciler = ReconcilerConfig()
            self.hardware = HardwareConfig()
            self.logging = LogConfig()
            self.server = ServerConfig()
            self.development = DevelopmentConfig()
            self._config_path = None
            self._raw_config = {}
            self._initialized = True
            logger.debug("Configuration manager initialized")

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton instance so the next Config() starts from defaults"""
        cls._instance = None
        cls._initialized = False

    def load(self, config_path: Optional[Union[str, Path]] = None) -> None:
        """
        Load configuration from YAML file with environment variable overrides.
        The packaged default.yml is always applied first.

        Args:
            config_path: Path to YAML configuration file

        Raises:
            ConfigurationError: If configuration loading or validation fails
        """
        try:
            self._raw_config = {}
            self._load_file(DEFAULT_CONFIG_PATH)

            if config_path is not None:
                logger.info(f"Loading configuration from {config_path}")
                self._config_path = Path(config_path)
                if not self._config_path.exists():
                    raise ConfigurationError(f"Configuration file not found: {config_path}")
                self._load_file(self._config_path)

            # Apply environment variable overrides
            self._apply_env_overrides()

            # Validate and create configuration objects
            self._validate_and_create_configs()

            logger.info("Configuration loaded successfully")

        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Failed to load configuration: {str(e)}", exc_info=True)
            raise ConfigurationError(f"Configuration loading failed: {str(e)}") from e

    def _load_file(self, path: Path) -> None:
        """Merge one YAML file into the raw configuration"""
        with open(path) as f:
            custom_config = yaml.safe_load(f)
        if custom_config:
            if not isinstance(custom_config, dict):
                raise ConfigurationError(f"Configuration root must be a mapping: {path}")
            self._merge_configs(custom_config)
            logger.debug(f"Merged configuration from {path}")

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration"""
        env_mapping = {
            "DAHDI_LIFECYCLE_SYSTEM_CONF": ("host", "system_conf"),
            "DAHDI_LIFECYCLE_SCRATCH_DIR": ("host", "scratch_dir"),
            "DAHDI_LIFECYCLE_SPAN_POLICY": ("spans", "policy"),
            "DAHDI_LIFECYCLE_STEP_TIMEOUT": ("lifecycle", "step_timeout", float),
            "DAHDI_LIFECYCLE_STEP_RETRIES": ("lifecycle", "step_retries", int),
            "DAHDI_LIFECYCLE_API_PORT": ("server", "port", int),
            "DAHDI_LIFECYCLE_MOCK": ("development", "mock_hardware", _parse_bool),
            "LOG_LEVEL": ("logging", "level"),
            "LOG_OUTPUT": ("logging", "output"),
        }

        for env_var, config_path in env_mapping.items():
            if env_var in os.environ:
                section, key = config_path[0], config_path[1]
                value = os.environ[env_var]

                # Apply type conversion if specified
                if len(config_path) > 2:
                    try:
                        value = config_path[2](value)
                    except ValueError as e:
                        raise ConfigurationError(
                            f"Invalid environment variable {env_var}: {str(e)}"
                        )

                # Ensure section exists
                if section not in self._raw_config:
                    self._raw_config[section] = {}

                self._raw_config[section][key] = value
                logger.debug(f"Applied environment override: {env_var}={value}")

    def _validate_and_create_configs(self) -> None:
        """Validate configuration and create typed configuration objects"""
        self.host = self._build_section("host", HostConfig)
        self.tools = self._build_section("tools", ToolsConfig)
        self.lifecycle = self._build_section("lifecycle", LifecycleConfig)
        self.pbx = self._build_section("pbx", PBXConfig)
        self.spans = self._build_section("spans", SpansConfig)
        self.reconciler = self._build_section("reconciler", ReconcilerConfig)
        self.hardware = self._build_section("hardware", HardwareConfig)
        self.logging = self._build_section("logging", LogConfig)
        self.server = self._build_section("server", ServerConfig)
        self.development = self._build_section("development", DevelopmentConfig)

        if self.spans.policy not in ("detect", "auto", "manual"):
            raise ConfigurationError(f"Invalid spans.policy: {self.spans.policy}")
        if self.logging.format not in ("json", "console"):
            raise ConfigurationError(f"Invalid logging.format: {self.logging.format}")
        if self.lifecycle.step_retries < 0:
            raise ConfigurationError("lifecycle.step_retries must not be negative")

        logger.debug("Configuration validation completed successfully")

    def _build_section(self, section: str, section_type: type) -> Any:
        """Build one typed section, using dataclass defaults for missing keys"""
        raw = self._raw_config.get(section) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Configuration section {section} must be a mapping")

        defaults = section_type()
        known = set(defaults.__dataclass_fields__)
        unknown = set(raw) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration keys in {section}: {', '.join(sorted(unknown))}"
            )

        values = {}
        for key in known:
            default = getattr(defaults, key)
            values[key] = self._get_config_value(section, key, raw, default)
        return section_type(**values)

    def _get_config_value(
        self,
        section: str,
        key: str,
        config_dict: Dict,
        default: Any,
    ) -> Any:
        """
        Get typed configuration value with validation.

        Args:
            section: Configuration section name
            key: Configuration key
            config_dict: Raw values of the section
            default: Dataclass default, also used to infer the expected type

        Returns:
            Typed configuration value

        Raises:
            ConfigurationError: If value has an invalid type
        """
        value = config_dict.get(key)
        if value is None:
            return default
        if default is None:
            return str(value)

        value_type = type(default)
        try:
            if value_type is bool and isinstance(value, str):
                value = _parse_bool(value)
            elif value_type is list and isinstance(value, str):
                value = [value]
            elif value_type is dict and not isinstance(value, dict):
                raise TypeError(f"expected mapping, got {type(value).__name__}")
            elif value_type is float and isinstance(value, int):
                value = float(value)
            elif not isinstance(value, value_type):
                value = value_type(value)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid type for {section}.{key}: expected {value_type.__name__}, got {type(value).__name__}"
            ) from e

        return value

    def _merge_configs(self, custom_config: Dict[str, Any]) -> None:
        """Deep merge custom configuration with existing config"""
        def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
            for key, value in override.items():
                if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                    deep_merge(base[key], value)
                else:
                    base[key] = value

        deep_merge(self._raw_config, custom_config)

    def reload(self) -> None:
        """Reload configuration from file"""
        logger.info("Reloading configuration")
        self.load(self._config_path)

def _parse_bool(value: str) -> bool:
    """Parse a boolean from an environment or YAML string"""
    lowered = str(value).strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value}")
