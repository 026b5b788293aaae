"""API module for the knowledge-base service.

This module provides the FastAPI application for registering projects,
triggering scans and receiving GitHub webhooks.
"""

from .config import Settings, get_settings
from .dependencies import get_orchestrator, get_store, get_webhook_processor
from .main import app, create_app

__all__ = [
    "app",
    "create_app",
    "get_orchestrator",
    "get_store",
    "get_webhook_processor",
    "get_settings",
    "Settings",
]
