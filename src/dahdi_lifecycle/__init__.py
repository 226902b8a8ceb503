"""
DAHDI lifecycle orchestrator package.
Main package initialization for the DAHDI hardware lifecycle project.
"""

from .utils.logger import DAHDILogger, LoggerConfig

# Configure basic logger before importing modules
logger = DAHDILogger()
log_config = LoggerConfig(
    level="INFO",
    format="console",
)
logger.configure(log_config)

# Now it's safe to import submodules
from . import utils
from . import core
from . import hardware
from . import api

__version__ = "1.0.0"
