"""
API package initialization.
Contains the FastAPI control surface for the lifecycle orchestrator.
"""

from .server import LifecycleAPI, create_app, run_server

__all__ = [
    'LifecycleAPI',
    'create_app',
    'run_server',
]
