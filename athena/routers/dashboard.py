from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from athena.analytics.aggregator import AnalyticsAggregator
from athena.core.logging import get_logger
from athena.core.security import get_session_principal
from athena.dashboard.store import LayoutStore
from athena.dashboard.view import (
    ACTIVITY_RANGES,
    DEFAULT_ACTIVITY_RANGE,
    DEFAULT_PEAK_HOURS_RANGE,
    PEAK_HOURS_RANGES,
    build_dashboard_view,
)
from athena.routers.deps import get_aggregator, get_layout_store

log = get_logger("athena.dashboard")

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


async def _current(aggregator: AnalyticsAggregator):
    # fetch whatever is stale; nothing runs before configuration is loaded
    if aggregator.settings_loaded:
        await aggregator.refresh()
    return aggregator.snapshot()


@router.get("/analytics", response_class=JSONResponse, operation_id="get_dashboard_analytics")
async def get_analytics(
    _: str = Depends(get_session_principal),
    aggregator: AnalyticsAggregator = Depends(get_aggregator),
) -> JSONResponse:
    """
    Combined analytics: per-domain data/loading/error plus the aggregate flags.
    Only identity/session/system failures set the aggregate error.
    """
    snapshot = await _current(aggregator)
    return JSONResponse(snapshot.to_wire())


@router.post("/analytics/refetch", response_class=JSONResponse, operation_id="refetch_dashboard_analytics")
async def refetch_analytics(
    _: str = Depends(get_session_principal),
    aggregator: AnalyticsAggregator = Depends(get_aggregator),
) -> JSONResponse:
    """Re-runs the health checks and every fetch gated as healthy."""
    if not aggregator.settings_loaded:
        raise HTTPException(
            status_code=503,
            detail={"error_code": "SETTINGS_NOT_LOADED", "message": "Configuration is not loaded yet"},
        )
    await aggregator.refetch_all()
    return JSONResponse(aggregator.snapshot().to_wire())


@router.get("/view", response_class=JSONResponse, operation_id="get_dashboard_view")
async def get_view(
    activity_range: str = Query(DEFAULT_ACTIVITY_RANGE),
    peak_hours_range: str = Query(DEFAULT_PEAK_HOURS_RANGE),
    store: LayoutStore = Depends(get_layout_store),
    aggregator: AnalyticsAggregator = Depends(get_aggregator),
) -> JSONResponse:
    """
    The layout filtered by capability, each visible widget rendered against the
    combined analytics, plus the hidden widgets that can be added back.
    """
    if activity_range not in ACTIVITY_RANGES:
        raise HTTPException(
            status_code=400,
            detail={"error_code": "INVALID_RANGE", "message": f"activity_range must be one of {list(ACTIVITY_RANGES)}"},
        )
    if peak_hours_range not in PEAK_HOURS_RANGES:
        raise HTTPException(
            status_code=400,
            detail={"error_code": "INVALID_RANGE", "message": f"peak_hours_range must be one of {list(PEAK_HOURS_RANGES)}"},
        )

    analytics = await _current(aggregator)
    view = build_dashboard_view(
        store.snapshot(),
        analytics,
        activity_range=activity_range,
        peak_hours_range=peak_hours_range,
        tz=aggregator.tz,
    )
    return JSONResponse(view.to_wire())
