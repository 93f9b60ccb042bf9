"""
Dashboard view: capability filtering plus a render contract per widget.

`WIDGET_RENDERERS` is a total mapping over `WidgetId`; importing this module
fails if a catalogue entry has no renderer. Renderers are pure functions of a
`RenderContext` and return JSON-ready dicts (camelCase keys).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from athena.analytics.types import (
    CombinedAnalytics,
    GrowthDirection,
    HydraAnalytics,
    IdentityAnalytics,
    SessionAnalytics,
    SystemAnalytics,
    SystemHealth,
)
from athena.dashboard.layout import available_widgets, visible_widgets
from athena.dashboard.widgets import WIDGET_DEFINITIONS, get_definition
from athena.models import DashboardLayout, WidgetDefinition, WidgetId

ACTIVITY_RANGES: Dict[str, int] = {"7d": 7, "14d": 14, "30d": 30}
DEFAULT_ACTIVITY_RANGE = "30d"

# None means no cutoff
PEAK_HOURS_RANGES: Dict[str, Optional[int]] = {
    "today": 1,
    "7d": 7,
    "14d": 14,
    "30d": 30,
    "60d": 60,
    "90d": 90,
    "180d": 180,
    "1y": 365,
    "all": None,
}
DEFAULT_PEAK_HOURS_RANGE = "1y"

FEED_LIMIT = 20
PIE_NAME_LIMIT = 20


@dataclass
class RenderContext:
    analytics: CombinedAnalytics
    activity_range: str = DEFAULT_ACTIVITY_RANGE
    peak_hours_range: str = DEFAULT_PEAK_HOURS_RANGE
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tz: tzinfo = timezone.utc

    @property
    def identity(self) -> Optional[IdentityAnalytics]:
        return self.analytics.identity.data

    @property
    def session(self) -> Optional[SessionAnalytics]:
        return self.analytics.session.data

    @property
    def system(self) -> Optional[SystemAnalytics]:
        return self.analytics.system.data

    @property
    def hydra(self) -> Optional[HydraAnalytics]:
        return self.analytics.hydra.data


# ------------------- derived data -------------------

def _dump(items: Iterable[BaseModel]) -> List[Dict[str, Any]]:
    return [i.model_dump(mode="json", by_alias=True) for i in items]


def _truncate(name: str, limit: int = PIE_NAME_LIMIT) -> str:
    return f"{name[:limit]}..." if len(name) > limit else name


def verification_rate(identity: Optional[IdentityAnalytics]) -> int:
    if identity is None:
        return 0
    status = identity.verification_status
    total = status.verified + status.unverified
    if total == 0:
        return 0
    return round(status.verified / total * 100)


def peak_hours_bars(
    timestamps: Iterable[datetime],
    range_key: str,
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> List[Dict[str, Any]]:
    stamps = list(timestamps)
    if not stamps:
        return []
    days = PEAK_HOURS_RANGES.get(range_key)
    cutoff = now - timedelta(days=days) if days else None
    counts = [0] * 24
    for ts in stamps:
        if cutoff is None or ts >= cutoff:
            counts[ts.astimezone(tz).hour] += 1
    return [{"label": f"{hour:02d}", "value": count} for hour, count in enumerate(counts)]


def growth_trend(identity: Optional[IdentityAnalytics]) -> Optional[Dict[str, Any]]:
    if identity is None:
        return None
    growth = identity.week_over_week_growth
    if growth.direction is GrowthDirection.FLAT:
        return None
    return {"value": abs(growth.percentage_change), "direction": growth.direction.value}


def activity_feed(
    identity: Optional[IdentityAnalytics],
    session: Optional[SessionAnalytics],
    limit: int = FEED_LIMIT,
) -> List[Dict[str, Any]]:
    """Signups and logins merged, newest first."""
    entries = []
    for signup in identity.recent_signups if identity else []:
        entries.append((signup.timestamp, {
            "id": f"signup-{signup.id}",
            "timestamp": signup.timestamp.isoformat(),
            "label": signup.email,
            "type": "Signup",
            "detail": f"Schema: {signup.schema_id}",
        }))
    for login in session.recent_logins if session else []:
        entries.append((login.timestamp, {
            "id": f"login-{login.id}",
            "timestamp": login.timestamp.isoformat(),
            "label": login.email,
            "type": "Login",
            "detail": f"Method: {login.method}",
        }))
    entries.sort(key=lambda e: e[0], reverse=True)
    return [e[1] for e in entries[:limit]]


def _day_label(iso_date: str) -> str:
    d = datetime.strptime(iso_date, "%Y-%m-%d")
    return f"{d:%b} {d.day}"


def combined_activity_series(
    identity: Optional[IdentityAnalytics],
    session: Optional[SessionAnalytics],
    range_key: str,
) -> List[Dict[str, Any]]:
    days = ACTIVITY_RANGES.get(range_key, ACTIVITY_RANGES[DEFAULT_ACTIVITY_RANGE])

    def points(series) -> List[Dict[str, Any]]:
        return [{"label": _day_label(p.date), "value": p.count} for p in series][-days:]

    return [
        {"id": "signups", "label": "Sign-ups", "data": points(identity.identities_by_day if identity else [])},
        {"id": "logins", "label": "Logins", "data": points(session.sessions_by_day if session else [])},
    ]


def _health_label(health: Optional[SystemHealth]) -> str:
    if health is SystemHealth.HEALTHY:
        return "✓ Healthy"
    if health is SystemHealth.ERROR:
        return "✗ Error"
    return health.value if health else "Unknown"


# ------------------- renderers -------------------

Renderer = Callable[[RenderContext], Dict[str, Any]]


def _stat(title: str, value: Any, **extra: Any) -> Dict[str, Any]:
    return {"kind": "stat", "title": title, "value": value, **extra}


def _render_total_users(ctx: RenderContext) -> Dict[str, Any]:
    i = ctx.identity
    return _stat("Total Users", i.total_identities if i else 0, sparkline=_dump(i.identities_by_year) if i else [])


def _render_active_sessions(ctx: RenderContext) -> Dict[str, Any]:
    s = ctx.session
    return _stat("Active Users", s.total_active_users if s else 0, sparkline=_dump(s.active_users_by_year) if s else [])


def _render_avg_session(ctx: RenderContext) -> Dict[str, Any]:
    s = ctx.session
    return _stat(
        "Avg Session",
        s.average_session_duration if s else 0,
        unit="minutes",
        subtitle=f"{s.active_sessions if s else 0} active now",
    )


def _render_user_growth(ctx: RenderContext) -> Dict[str, Any]:
    i = ctx.identity
    weeks = list(reversed(i.registrations_by_week)) if i else [0, 0, 0, 0]
    bars = [{"label": f"Week {n + 1}", "count": count} for n, count in enumerate(weeks)]
    return _stat("User Growth", i.total_growth_4_weeks if i else 0, trend=growth_trend(i), sparkline=bars)


def _render_kratos_health(ctx: RenderContext) -> Dict[str, Any]:
    health = ctx.system.system_health if ctx.system else None
    return _stat("Kratos Health", _health_label(health), subtitle=health.value if health else "Unknown")


def _render_hydra_health(ctx: RenderContext) -> Dict[str, Any]:
    health = ctx.hydra.system_health if ctx.hydra else None
    return _stat("Hydra Health", _health_label(health), subtitle=health.value if health else "Unknown")


def _render_combined_activity(ctx: RenderContext) -> Dict[str, Any]:
    return {
        "kind": "area-chart",
        "title": "Activity Overview",
        "range": ctx.activity_range if ctx.activity_range in ACTIVITY_RANGES else DEFAULT_ACTIVITY_RANGE,
        "rangeOptions": list(ACTIVITY_RANGES),
        "series": combined_activity_series(ctx.identity, ctx.session, ctx.activity_range),
    }


def _render_users_by_schema(ctx: RenderContext) -> Dict[str, Any]:
    items = ctx.identity.identities_by_schema if ctx.identity else []
    return {
        "kind": "pie-chart",
        "title": "Users by Schema",
        "data": [{"name": _truncate(s.schema_id), "value": s.count} for s in items],
    }


def _render_verification_gauge(ctx: RenderContext) -> Dict[str, Any]:
    status = ctx.identity.verification_status if ctx.identity else None
    verified = status.verified if status else 0
    total = verified + (status.unverified if status else 0)
    return {
        "kind": "gauge",
        "title": "Verification Rate",
        "value": verification_rate(ctx.identity),
        "label": f"{verified} of {total} verified",
    }


def _render_peak_hours(ctx: RenderContext) -> Dict[str, Any]:
    stamps = ctx.session.session_timestamps if ctx.session else []
    return {
        "kind": "bar-chart",
        "title": "Peak Activity Hours",
        "range": ctx.peak_hours_range,
        "rangeOptions": list(PEAK_HOURS_RANGES),
        "data": peak_hours_bars(stamps, ctx.peak_hours_range, ctx.now, ctx.tz),
    }


def _render_session_locations(ctx: RenderContext) -> Dict[str, Any]:
    points = ctx.session.session_geo_points if ctx.session else []
    return {"kind": "heat-map", "title": "Session Locations", "points": _dump(points)}


def _render_activity_feed(ctx: RenderContext) -> Dict[str, Any]:
    return {"kind": "feed", "title": "Recent Activity", "items": activity_feed(ctx.identity, ctx.session)}


def _render_grant_types(ctx: RenderContext) -> Dict[str, Any]:
    items = ctx.hydra.clients_by_grant_type if ctx.hydra else []
    return {
        "kind": "pie-chart",
        "title": "OAuth2 Grant Types",
        "data": [{"name": _truncate(g.grant_type), "value": g.count} for g in items],
    }


WIDGET_RENDERERS: Dict[WidgetId, Renderer] = {
    WidgetId.STAT_TOTAL_USERS: _render_total_users,
    WidgetId.STAT_ACTIVE_SESSIONS: _render_active_sessions,
    WidgetId.STAT_AVG_SESSION: _render_avg_session,
    WidgetId.STAT_USER_GROWTH: _render_user_growth,
    WidgetId.STAT_KRATOS_HEALTH: _render_kratos_health,
    WidgetId.STAT_HYDRA_HEALTH: _render_hydra_health,
    WidgetId.CHART_COMBINED_ACTIVITY: _render_combined_activity,
    WidgetId.CHART_USERS_BY_SCHEMA: _render_users_by_schema,
    WidgetId.CHART_VERIFICATION_GAUGE: _render_verification_gauge,
    WidgetId.CHART_PEAK_HOURS: _render_peak_hours,
    WidgetId.CHART_SESSION_LOCATIONS: _render_session_locations,
    WidgetId.CHART_ACTIVITY_FEED: _render_activity_feed,
    WidgetId.CHART_OAUTH2_GRANT_TYPES: _render_grant_types,
}

_missing = {d.id for d in WIDGET_DEFINITIONS} - set(WIDGET_RENDERERS)
if _missing:
    raise ImportError(f"no renderer for widget(s): {sorted(m.value for m in _missing)}")


# ------------------- view -------------------

class _ViewModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RenderedWidget(_ViewModel):
    i: WidgetId
    x: int
    y: int
    w: int
    h: int
    min_w: Optional[int] = None
    min_h: Optional[int] = None
    max_w: Optional[int] = None
    max_h: Optional[int] = None
    title: str
    category: str
    data: Dict[str, Any] = Field(default_factory=dict)


class DashboardView(_ViewModel):
    widgets: List[RenderedWidget]
    available_widgets: List[WidgetDefinition]
    layout_version: int
    is_loading: bool
    is_error: bool
    error: Optional[str] = None
    hydra_enabled: bool
    is_hydra_available: bool

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def build_dashboard_view(
    layout: DashboardLayout,
    analytics: CombinedAnalytics,
    *,
    activity_range: str = DEFAULT_ACTIVITY_RANGE,
    peak_hours_range: str = DEFAULT_PEAK_HOURS_RANGE,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
) -> DashboardView:
    ctx = RenderContext(
        analytics=analytics,
        activity_range=activity_range,
        peak_hours_range=peak_hours_range,
        now=now or datetime.now(timezone.utc),
        tz=tz,
    )
    hydra_ok = analytics.is_hydra_available

    rendered = []
    for item in visible_widgets(layout, hydra_available=hydra_ok):
        definition = get_definition(item.i)
        rendered.append(
            RenderedWidget(
                **item.model_dump(),
                title=definition.title,
                category=definition.category.value,
                data=WIDGET_RENDERERS[item.i](ctx),
            )
        )

    return DashboardView(
        widgets=rendered,
        available_widgets=available_widgets(layout, hydra_available=hydra_ok),
        layout_version=layout.version,
        is_loading=analytics.is_loading,
        is_error=analytics.is_error,
        error=analytics.error,
        hydra_enabled=analytics.hydra_enabled,
        is_hydra_available=hydra_ok,
    )
