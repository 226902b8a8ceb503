# src/dahdi_lifecycle/api/server.py
"""
Control API server for the DAHDI lifecycle orchestrator.
Initializes the FastAPI application around one orchestrator instance, serializes
lifecycle requests with a lock and maps lifecycle errors to HTTP responses.
"""

import asyncio
import sys
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from typing import Optional

from ..utils.config import SYSTEM_CONFIG_PATH, Config, ConfigurationError
from ..utils.logger import DAHDILogger, LoggerConfig, log_function_call
from ..core.interfaces import LifecycleError
from ..core.orchestrator import LifecycleOrchestrator

# Configure module logger
logger = DAHDILogger().get_logger(__name__)

class LifecycleAPI:
    """
    API server class that owns the FastAPI application and the orchestrator.
    """
    def __init__(self, config: Optional[Config] = None, orchestrator: Optional[LifecycleOrchestrator] = None):
        self.config = config or Config()
        self.orchestrator = orchestrator or LifecycleOrchestrator.from_config(self.config)

        from .routes import router as api_router
        self.api_router = api_router

        self.app = FastAPI(
            title="DAHDI Lifecycle API",
            description="""
            Control API for the DAHDI hardware lifecycle.

            ## Features

            * Stop, start, restart and light restart of the DAHDI/Wanpipe stack
            * Hardware discovery listing
            * Dry-run configuration drift preview

            ## Concurrency

            One lifecycle request runs at a time; concurrent requests get 409.

            ## Authentication

            This API does not require authentication. Bind it to localhost.
            """,
            version="1.0.0",
            openapi_tags=[
                {
                    "name": "status",
                    "description": "Read-only observation of the host"
                },
                {
                    "name": "lifecycle",
                    "description": "Lifecycle requests that change the host"
                }
            ],
            docs_url="/docs",
            redoc_url="/redoc",
            openapi_url="/openapi.json",
        )
        self.app.state.orchestrator = self.orchestrator
        self.app.state.lifecycle_lock = asyncio.Lock()

        self._setup_middleware()
        self._setup_exception_handlers()
        self.app.include_router(self.api_router)

        logger.info("lifecycle_api_initialized")

    @log_function_call(level="DEBUG")
    def _setup_middleware(self) -> None:
        """Configure request logging"""
        @self.app.middleware("http")
        async def log_requests(request: Request, call_next):
            logger.debug("http_request", method=request.method, url=str(request.url))
            response = await call_next(request)
            logger.debug("http_response", status_code=response.status_code)
            return response

    @log_function_call(level="DEBUG")
    def _setup_exception_handlers(self) -> None:
        """Configure global exception handlers"""
        @self.app.exception_handler(RequestValidationError)
        async def validation_exception_handler(request: Request, exc: RequestValidationError):
            logger.error("request_validation_error", errors=str(exc.errors()))
            return JSONResponse(
                status_code=422,
                content={"detail": exc.errors()}
            )

        @self.app.exception_handler(LifecycleError)
        async def lifecycle_exception_handler(request: Request, exc: LifecycleError):
            logger.error("lifecycle_error", error=str(exc), error_type=type(exc).__name__)
            content = {"detail": str(exc), "error_type": type(exc).__name__}
            if exc.command is not None:
                content["command"] = exc.command.command_line
                content["exit_code"] = exc.command.exit_code
            return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=content)

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            logger.error("unhandled_exception", error=str(exc), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"detail": "Internal server error"}
            )

def create_app(config: Optional[Config] = None, orchestrator: Optional[LifecycleOrchestrator] = None) -> FastAPI:
    """Build the FastAPI application"""
    return LifecycleAPI(config, orchestrator).app

def run_server(config_path: Optional[str] = None):
    """
    Start the lifecycle API server

    Args:
        config_path: Optional path to configuration file; the system-wide
                    file is used when present and none is given
    """
    server_logger = DAHDILogger().get_logger(__name__)
    try:
        config = Config()
        if config_path is None and SYSTEM_CONFIG_PATH.exists():
            config_path = str(SYSTEM_CONFIG_PATH)
        config.load(config_path)

        DAHDILogger().configure(LoggerConfig(
            level=config.logging.level,
            format=config.logging.format,
            output_file=config.logging.output,
            max_bytes=config.logging.max_bytes,
            backup_count=config.logging.backup_count,
        ))

        api = LifecycleAPI(config)
        server_logger.info("api_server_starting",
                           host=config.server.host,
                           port=config.server.port,
                           mock_hardware=config.development.mock_hardware)
        uvicorn.run(
            api.app,
            host=config.server.host,
            port=config.server.port,
            log_level=config.logging.level.lower()
        )
    except ConfigurationError as e:
        server_logger.error("configuration_error", error=str(e))
        sys.exit(2)
