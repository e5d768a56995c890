"""API route handlers."""

from .projects import router as projects_router
from .services import router as services_router
from .system import router as system_router

__all__ = ["projects_router", "services_router", "system_router"]
