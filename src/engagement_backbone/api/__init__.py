"""
API Package

Admin and health routes of the engagement backbone service.
"""

from .admin_routes import router as admin_router
from .health_routes import router as health_router

__all__ = [
    "admin_router",
    "health_router",
]
