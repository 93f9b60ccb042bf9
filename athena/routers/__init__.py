"""
FastAPI routers for Athena.

Routers are split by concern and versioned where appropriate.
Importing this module does not create an application instance.
"""

from __future__ import annotations

from .dashboard import router as dashboard_router
from .layout import router as layout_router
from .system import router as system_router

__all__ = [
    "dashboard_router",
    "layout_router",
    "system_router",
]
