"""
API Routers
===========

FastAPI routers for different API endpoints.
"""

from .expand_project import router as expand_project_router
from .security import router as security_router

__all__ = [
    "expand_project_router",
    "security_router",
]
