# src/dahdi_lifecycle/utils/logger.py
"""
Structured logging for the DAHDI lifecycle orchestrator.
Wraps structlog on top of the standard logging module so that every component
can emit snake_case events with bound key/value context. Output is rendered as
JSON (python-json-logger) or as plain console text, optionally to a rotating file.
"""

import asyncio
import functools
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger.json import JsonFormatter

# Attributes owned by logging.LogRecord; structlog context must not overwrite them
_RESERVED_RECORD_KEYS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) - {"exc_info", "stack_info"} | {"message", "asctime"}

# Already part of the console line
_CONSOLE_HIDDEN_KEYS = frozenset({"exc_info", "stack_info", "level", "logger", "timestamp"})

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@dataclass
class LoggerConfig:
    """Logging configuration parameters"""
    level: str = "INFO"
    format: str = "console"
    output_file: Optional[str] = None
    max_bytes: int = 10_485_760
    backup_count: int = 5


class ConsoleFormatter(logging.Formatter):
    """Plain text formatter appending bound context as key=value pairs"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {
            key: value for key, value in vars(record).items()
            if key not in _RESERVED_RECORD_KEYS and key not in _CONSOLE_HIDDEN_KEYS
        }
        if context:
            line += " " + " ".join(f"{key}={value}" for key, value in context.items())
        return line


def _rename_reserved_keys(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Prefix context keys that collide with LogRecord attributes"""
    for key in [k for k in event_dict if k in _RESERVED_RECORD_KEYS]:
        event_dict[f"ctx_{key}"] = event_dict.pop(key)
    return event_dict


class DAHDILogger:
    """
    Process-wide logging manager.
    The first instance configures structlog; later instances share the same state.
    """
    _instance = None
    _configured = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def configure(self, config: LoggerConfig) -> None:
        """
        Configure handlers and structlog processors.

        Args:
            config: Logging configuration
        """
        level = getattr(logging, config.level.upper(), logging.INFO)

        if config.format == "json":
            formatter: logging.Formatter = JsonFormatter(JSON_FORMAT)
        else:
            formatter = ConsoleFormatter(CONSOLE_FORMAT)

        handlers: list[logging.Handler] = []
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        handlers.append(console)

        if config.output_file:
            log_dir = os.path.dirname(config.output_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                config.output_file,
                maxBytes=config.max_bytes,
                backupCount=config.backup_count,
            )
            file_handler.setFormatter(JsonFormatter(JSON_FORMAT))
            handlers.append(file_handler)

        root = logging.getLogger()
        for handler in list(root.handlers):
            if getattr(handler, "_dahdi_lifecycle", False):
                root.removeHandler(handler)
                handler.close()
        for handler in handlers:
            handler._dahdi_lifecycle = True
            root.addHandler(handler)
        root.setLevel(level)

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.stdlib.filter_by_level,
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                _rename_reserved_keys,
                structlog.stdlib.render_to_log_kwargs,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=False,
        )
        DAHDILogger._configured = True

    def get_logger(self, name: str) -> structlog.stdlib.BoundLogger:
        """Return a structlog logger for the given module name"""
        if not DAHDILogger._configured:
            self.configure(LoggerConfig())
        return structlog.get_logger(name)


def log_function_call(level: str = "DEBUG") -> Callable:
    """
    Decorator logging entry, exit and failure of a function or coroutine.

    Args:
        level: Log level used for entry/exit events
    """
    def decorator(func: Callable) -> Callable:
        log = DAHDILogger().get_logger(func.__module__)
        method = level.lower()

        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                getattr(log, method)("function_call_start", function=func.__qualname__)
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    log.debug("function_call_failed", function=func.__qualname__, error=str(e))
                    raise
                getattr(log, method)("function_call_complete", function=func.__qualname__)
                return result
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            getattr(log, method)("function_call_start", function=func.__qualname__)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                log.debug("function_call_failed", function=func.__qualname__, error=str(e))
                raise
            getattr(log, method)("function_call_complete", function=func.__qualname__)
            return result
        return wrapper

    return decorator
