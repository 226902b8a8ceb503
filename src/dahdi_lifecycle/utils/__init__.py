"""
Utilities package initialization.
Contains shared utility functions and classes.
"""

from .config import Config, ConfigurationError
from .logger import DAHDILogger, LoggerConfig, log_function_call
