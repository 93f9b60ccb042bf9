"""
Default layout builder and grid helpers.

The builder is a greedy bin-packer: definitions are placed in catalogue order,
each at the horizontal offset whose footprint has the lowest top edge (ties go
to the leftmost offset). Column heights only ever grow, so placements never
overlap.
"""

from __future__ import annotations

from typing import Any, Iterable, List, NamedTuple, Optional, Sequence

from pydantic import ValidationError

from athena.core.logging import get_logger
from athena.dashboard.widgets import (
    GRID_COLUMNS,
    HYDRA_WIDGETS,
    LAYOUT_VERSION,
    WIDGET_DEFINITIONS,
    get_definition,
)
from athena.models import DashboardLayout, WidgetDefinition, WidgetLayoutItem

log = get_logger("athena.layout")


class Placement(NamedTuple):
    id: Any
    x: int
    y: int
    w: int
    h: int


def pack_widgets(definitions: Iterable[Any], cols: int = GRID_COLUMNS) -> List[Placement]:
    """Place anything exposing `id`, `default_w` and `default_h` into a `cols`-wide grid."""
    heights = [0] * cols
    placements: List[Placement] = []
    for d in definitions:
        w = max(1, min(int(d.default_w), cols))
        h = max(1, int(d.default_h))
        best_x, best_y = 0, None
        for x in range(0, cols - w + 1):
            top = max(heights[x:x + w])
            if best_y is None or top < best_y:
                best_x, best_y = x, top
        placements.append(Placement(d.id, best_x, best_y, w, h))
        for dx in range(w):
            heights[best_x + dx] = best_y + h
    return placements


def build_default_layout(
    definitions: Sequence[WidgetDefinition] = WIDGET_DEFINITIONS,
    cols: int = GRID_COLUMNS,
) -> DashboardLayout:
    widgets = []
    for d, p in zip(definitions, pack_widgets(definitions, cols)):
        widgets.append(
            WidgetLayoutItem(
                i=p.id,
                x=p.x,
                y=p.y,
                w=p.w,
                h=p.h,
                min_w=d.min_w,
                min_h=d.min_h,
                max_w=d.max_w,
                max_h=d.max_h,
            )
        )
    return DashboardLayout(widgets=widgets, hidden_widgets=[], version=LAYOUT_VERSION)


def _clamp(value: int, lower: Optional[int], upper: Optional[int]) -> int:
    if lower is not None:
        value = max(value, lower)
    if upper is not None:
        value = min(value, upper)
    return value


def normalize_item(item: WidgetLayoutItem, cols: int = GRID_COLUMNS) -> WidgetLayoutItem:
    """Clamp size to the item's (or its definition's) min/max and keep it inside the grid."""
    d = get_definition(item.i)
    min_w = item.min_w if item.min_w is not None else (d.min_w if d else None)
    min_h = item.min_h if item.min_h is not None else (d.min_h if d else None)
    max_w = item.max_w if item.max_w is not None else (d.max_w if d else None)
    max_h = item.max_h if item.max_h is not None else (d.max_h if d else None)

    w = min(_clamp(item.w, min_w, max_w), cols)
    h = max(1, _clamp(item.h, min_h, max_h))
    x = min(max(0, item.x), cols - w)
    y = max(0, item.y)
    return item.model_copy(update={"x": x, "y": y, "w": max(1, w), "h": h})


def items_overlap(a: WidgetLayoutItem, b: WidgetLayoutItem) -> bool:
    return a.x < b.x + b.w and b.x < a.x + a.w and a.y < b.y + b.h and b.y < a.y + a.h


def parse_layout(raw: Any) -> Optional[DashboardLayout]:
    """
    Trusted layout from a persisted payload, or None.

    Only the current version with a list of widgets is accepted; anything else
    (missing, older schema, malformed items) is discarded so the caller rebuilds.
    """
    if not isinstance(raw, dict):
        return None
    if raw.get("version") != LAYOUT_VERSION or not isinstance(raw.get("widgets"), list):
        return None
    try:
        layout = DashboardLayout.model_validate(raw)
    except ValidationError as exc:
        log.warning("Discarding malformed dashboard layout: %s", exc.error_count())
        return None
    # placed and hidden stay disjoint (hidden wins), ids are unique and every
    # item is pulled back inside the grid
    hidden = set(layout.hidden_widgets)
    seen = set()
    widgets: List[WidgetLayoutItem] = []
    for item in layout.widgets:
        if item.i in hidden or item.i in seen:
            continue
        seen.add(item.i)
        widgets.append(normalize_item(item))
    return layout.model_copy(update={"widgets": widgets})


def is_layout_compatible(raw: Any) -> bool:
    return parse_layout(raw) is not None


def visible_widgets(layout: DashboardLayout, *, hydra_available: bool) -> List[WidgetLayoutItem]:
    """Placed widgets that the current capabilities allow to render."""
    return [
        w for w in layout.widgets
        if get_definition(w.i) is not None and (hydra_available or w.i not in HYDRA_WIDGETS)
    ]


def available_widgets(layout: DashboardLayout, *, hydra_available: bool) -> List[WidgetDefinition]:
    """Hidden widgets the user can add back."""
    out: List[WidgetDefinition] = []
    for wid in layout.hidden_widgets:
        if not hydra_available and wid in HYDRA_WIDGETS:
            continue
        d = get_definition(wid)
        if d is not None:
            out.append(d)
    return out


def next_row(widgets: Iterable[WidgetLayoutItem]) -> int:
    return max((w.y + w.h for w in widgets), default=0)

