from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from athena.analytics.aggregator import AnalyticsAggregator
from athena.core.security import get_session_principal
from athena.dashboard.repository import LayoutRepository
from athena.dashboard.store import LayoutStore, LayoutStoreRegistry


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=503,
            detail={"error_code": "NOT_READY", "message": f"{name} is not initialized"},
        )
    return value


def get_aggregator(request: Request) -> AnalyticsAggregator:
    return _state(request, "aggregator")


def get_layout_repository(request: Request) -> LayoutRepository:
    return _state(request, "layout_repository")


def get_layout_registry(request: Request) -> LayoutStoreRegistry:
    return _state(request, "layout_registry")


async def get_layout_store(
    principal: str = Depends(get_session_principal),
    registry: LayoutStoreRegistry = Depends(get_layout_registry),
) -> LayoutStore:
    """The principal's layout store, initialized (loaded or rebuilt) on first use."""
    store = await registry.get(principal)
    if not store.is_ready:
        raise HTTPException(
            status_code=409,
            detail={"error_code": "LAYOUT_NOT_READY", "message": "Dashboard layout is still loading"},
        )
    return store
