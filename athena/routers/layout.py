from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path
from pydantic import BaseModel

from athena.core.logging import get_logger
from athena.core.security import check_rate_limit, get_session_principal
from athena.dashboard.repository import LayoutRepository
from athena.dashboard.store import LayoutStore, LayoutStoreRegistry
from athena.dashboard.widgets import get_definition
from athena.models import DashboardLayout, WidgetId, WidgetLayoutItem
from athena.routers.deps import get_layout_registry, get_layout_repository, get_layout_store
from athena.settings import get_settings

log = get_logger("athena.layout")

router = APIRouter(prefix="/api/dashboard", tags=["layout"])


class WidgetsUpdate(BaseModel):
    widgets: List[WidgetLayoutItem]


class WidgetPatch(BaseModel):
    x: Optional[int] = None
    y: Optional[int] = None
    w: Optional[int] = None
    h: Optional[int] = None


async def _limit_writes(principal: str) -> None:
    s = get_settings()
    await check_rate_limit("layout", principal, s.RL_LAYOUT_WRITE_LIMIT_PER_MIN, 60)


def _known_widget(widget_id: str) -> WidgetId:
    definition = get_definition(widget_id)
    if definition is None:
        raise HTTPException(
            status_code=404,
            detail={"error_code": "UNKNOWN_WIDGET", "message": f"Unknown widget '{widget_id}'"},
        )
    return definition.id


def _layout_response(layout: DashboardLayout, store: LayoutStore) -> Dict[str, Any]:
    return {"layout": layout.to_wire(), "saving": store.writer.has_pending or store.is_saving}


# ------------------- persistence endpoint -------------------

@router.get("/layout", operation_id="get_dashboard_layout")
async def get_dashboard_layout(
    principal: str = Depends(get_session_principal),
    repo: LayoutRepository = Depends(get_layout_repository),
):
    """The principal's stored layout as saved, or null."""
    try:
        layout = await repo.load(principal)
    except Exception as exc:
        log.exception("Error fetching dashboard layout for %s", principal)
        raise HTTPException(
            status_code=500,
            detail={"error_code": "LAYOUT_STORE_ERROR", "message": "Failed to load layout"},
        ) from exc
    return {"layout": layout}


@router.put("/layout", operation_id="put_dashboard_layout")
async def put_dashboard_layout(
    body: Dict[str, Any] = Body(...),
    principal: str = Depends(get_session_principal),
    repo: LayoutRepository = Depends(get_layout_repository),
    registry: LayoutStoreRegistry = Depends(get_layout_registry),
):
    layout = body.get("layout")
    if not layout:
        raise HTTPException(
            status_code=400,
            detail={"error_code": "MISSING_LAYOUT", "message": "Missing layout in request body"},
        )
    if not isinstance(layout, dict):
        raise HTTPException(
            status_code=400,
            detail={"error_code": "INVALID_LAYOUT", "message": "layout must be an object"},
        )
    await _limit_writes(principal)

    try:
        await repo.save(principal, layout)
    except Exception as exc:
        log.exception("Error saving dashboard layout for %s", principal)
        raise HTTPException(
            status_code=500,
            detail={"error_code": "LAYOUT_STORE_ERROR", "message": "Failed to save layout"},
        ) from exc

    # the in-process store for this principal is now stale
    registry.discard(principal)
    return {"success": True}


# ------------------- store mutations -------------------

@router.get("/layout/state", operation_id="get_dashboard_layout_state")
async def get_layout_state(store: LayoutStore = Depends(get_layout_store)):
    return {"state": store.state.value, **_layout_response(store.snapshot(), store)}


@router.put("/layout/widgets", operation_id="update_dashboard_widgets")
async def update_widgets(
    update: WidgetsUpdate = Body(...),
    principal: str = Depends(get_session_principal),
    store: LayoutStore = Depends(get_layout_store),
):
    await _limit_writes(principal)
    return _layout_response(store.update_layout(update.widgets), store)


@router.post("/layout/widgets/{widget_id}", operation_id="add_dashboard_widget")
async def add_widget(
    widget_id: str = Path(...),
    principal: str = Depends(get_session_principal),
    store: LayoutStore = Depends(get_layout_store),
):
    wid = _known_widget(widget_id)
    await _limit_writes(principal)
    return _layout_response(store.add_widget(wid), store)


@router.delete("/layout/widgets/{widget_id}", operation_id="remove_dashboard_widget")
async def remove_widget(
    widget_id: str = Path(...),
    principal: str = Depends(get_session_principal),
    store: LayoutStore = Depends(get_layout_store),
):
    wid = _known_widget(widget_id)
    await _limit_writes(principal)
    return _layout_response(store.remove_widget(wid), store)


@router.patch("/layout/widgets/{widget_id}", operation_id="patch_dashboard_widget")
async def patch_widget(
    widget_id: str = Path(...),
    patch: WidgetPatch = Body(...),
    principal: str = Depends(get_session_principal),
    store: LayoutStore = Depends(get_layout_store),
):
    wid = _known_widget(widget_id)
    current = next((w for w in store.snapshot().widgets if w.i == wid), None)
    if current is None:
        raise HTTPException(
            status_code=404,
            detail={"error_code": "WIDGET_NOT_PLACED", "message": f"Widget '{wid.value}' is not on the dashboard"},
        )
    await _limit_writes(principal)

    layout = store.snapshot()
    if patch.w is not None or patch.h is not None:
        layout = store.resize_widget(
            wid,
            patch.w if patch.w is not None else current.w,
            patch.h if patch.h is not None else current.h,
        )
    if patch.x is not None or patch.y is not None:
        layout = store.move_widget(
            wid,
            patch.x if patch.x is not None else current.x,
            patch.y if patch.y is not None else current.y,
        )
    return _layout_response(layout, store)


@router.post("/layout/reset", operation_id="reset_dashboard_layout")
async def reset_layout(
    principal: str = Depends(get_session_principal),
    store: LayoutStore = Depends(get_layout_store),
):
    await _limit_writes(principal)
    return _layout_response(store.reset_to_default(), store)
