from __future__ import annotations

from typing import Dict, List, Optional

from athena.models import WidgetCategory, WidgetDefinition, WidgetId

GRID_COLUMNS = 12
LAYOUT_VERSION = 17


def _stat(wid: WidgetId, title: str, description: str, icon: str, *, requires_hydra: bool = False) -> WidgetDefinition:
    return WidgetDefinition(
        id=wid,
        title=title,
        description=description,
        icon=icon,
        category=WidgetCategory.STAT,
        default_w=2,
        default_h=2,
        requires_hydra=requires_hydra,
    )


def _chart(
    wid: WidgetId,
    title: str,
    description: str,
    icon: str,
    size: tuple,
    minimum: tuple,
    *,
    requires_hydra: bool = False,
) -> WidgetDefinition:
    return WidgetDefinition(
        id=wid,
        title=title,
        description=description,
        icon=icon,
        category=WidgetCategory.CHART,
        default_w=size[0],
        default_h=size[1],
        min_w=minimum[0],
        min_h=minimum[1],
        requires_hydra=requires_hydra,
    )


# Declaration order drives the default layout.
WIDGET_DEFINITIONS: List[WidgetDefinition] = [
    # ---- stat cards ----
    _stat(WidgetId.STAT_TOTAL_USERS, "Total Users", "Total number of registered users", "users"),
    _stat(WidgetId.STAT_ACTIVE_SESSIONS, "Active Users", "Unique users with active sessions", "shield"),
    _stat(WidgetId.STAT_AVG_SESSION, "Avg Session Duration", "Average session duration", "time"),
    _stat(WidgetId.STAT_USER_GROWTH, "User Growth", "New users this week with trend", "trending-up"),
    _stat(WidgetId.STAT_KRATOS_HEALTH, "Kratos Health", "Kratos system health status", "health"),
    _stat(WidgetId.STAT_HYDRA_HEALTH, "Hydra Health", "Hydra system health status", "cloud", requires_hydra=True),
    # ---- charts ----
    _chart(WidgetId.CHART_COMBINED_ACTIVITY, "Activity Overview", "Sign-ups and logins over time", "activity", (12, 6), (4, 3)),
    _chart(WidgetId.CHART_USERS_BY_SCHEMA, "Users by Schema", "Identity distribution by schema", "shapes", (3, 4), (2, 3)),
    _chart(WidgetId.CHART_VERIFICATION_GAUGE, "Email Verification Rate", "Visual gauge of email verification rate", "verified", (3, 4), (2, 3)),
    _chart(WidgetId.CHART_PEAK_HOURS, "Peak Activity Hours", "Login activity distribution by hour", "bar-chart", (6, 6), (3, 3)),
    _chart(WidgetId.CHART_SESSION_LOCATIONS, "Session Locations", "World heat map of session origins", "globe", (6, 6), (4, 4)),
    _chart(WidgetId.CHART_ACTIVITY_FEED, "Recent Activity", "Latest signups and logins", "activity", (3, 4), (2, 3)),
    _chart(
        WidgetId.CHART_OAUTH2_GRANT_TYPES,
        "OAuth2 Grant Types Usage",
        "Distribution of OAuth2 grant types",
        "key-round",
        (3, 4),
        (2, 3),
        requires_hydra=True,
    ),
]

_BY_ID: Dict[WidgetId, WidgetDefinition] = {d.id: d for d in WIDGET_DEFINITIONS}

HYDRA_WIDGETS = frozenset(d.id for d in WIDGET_DEFINITIONS if d.requires_hydra)


def get_definition(widget_id) -> Optional[WidgetDefinition]:
    """Catalogue lookup accepting a WidgetId or its string value; None when unknown."""
    try:
        return _BY_ID.get(WidgetId(widget_id))
    except ValueError:
        return None
