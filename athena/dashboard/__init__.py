"""
Dashboard layout engine: widget catalogue, default layout builder,
per-principal layout store with debounced persistence, and the view
that renders visible widgets against the combined analytics.
"""

from __future__ import annotations

from .layout import build_default_layout, normalize_item, parse_layout
from .repository import KratosLayoutRepository, LayoutRepository, RedisLayoutRepository, build_repository
from .store import DebouncedWriter, LayoutNotReadyError, LayoutStore, LayoutStoreRegistry, StoreState
from .view import WIDGET_RENDERERS, build_dashboard_view
from .widgets import GRID_COLUMNS, LAYOUT_VERSION, WIDGET_DEFINITIONS

__all__ = [
    "GRID_COLUMNS",
    "LAYOUT_VERSION",
    "WIDGET_DEFINITIONS",
    "WIDGET_RENDERERS",
    "DebouncedWriter",
    "KratosLayoutRepository",
    "LayoutNotReadyError",
    "LayoutRepository",
    "LayoutStore",
    "LayoutStoreRegistry",
    "RedisLayoutRepository",
    "StoreState",
    "build_dashboard_view",
    "build_default_layout",
    "build_repository",
    "normalize_item",
    "parse_layout",
]
