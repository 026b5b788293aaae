"""API routers for the knowledge-base service.

This module exports all API routers for inclusion in the main FastAPI app.
"""

from .health import router as health_router
from .projects import router as projects_router
from .webhooks import router as webhooks_router

__all__ = [
    "health_router",
    "projects_router",
    "webhooks_router",
]
