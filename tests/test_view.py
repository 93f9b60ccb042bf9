"""
Tests for the dashboard view: capability filtering and widget renderers.
"""

from datetime import timedelta

import pytest

from athena.analytics.reducers import reduce_hydra_clients, reduce_identities, reduce_sessions, reduce_system
from athena.analytics.types import (
    CombinedAnalytics,
    HydraAnalytics,
    IdentityAnalytics,
    QueryResult,
    SessionAnalytics,
    SystemAnalytics,
)
from athena.dashboard.layout import build_default_layout
from athena.dashboard.view import (
    WIDGET_RENDERERS,
    RenderContext,
    activity_feed,
    build_dashboard_view,
    combined_activity_series,
    growth_trend,
    peak_hours_bars,
    verification_rate,
)
from athena.dashboard.widgets import WIDGET_DEFINITIONS
from athena.models import OAuth2ClientRecord, WidgetId


@pytest.fixture
def analytics(now, make_identity, make_session):
    def _build(*, hydra_available=True, empty=False):
        identities = [] if empty else [
            make_identity(now - timedelta(days=1), verified=True, schema_id="customer"),
            make_identity(now - timedelta(days=2), verified=False, schema_id="customer"),
            make_identity(now - timedelta(days=9), verified=True, schema_id="staff"),
        ]
        sessions = [] if empty else [
            make_session(now - timedelta(hours=1), method="password"),
            make_session(now - timedelta(days=3), method="totp"),
        ]
        clients = [OAuth2ClientRecord(client_id="spa", token_endpoint_auth_method="none", grant_types=["authorization_code"])]
        return CombinedAnalytics(
            identity=QueryResult[IdentityAnalytics](data=reduce_identities(identities, now)),
            session=QueryResult[SessionAnalytics](data=reduce_sessions(sessions, now)),
            system=QueryResult[SystemAnalytics](data=reduce_system([], now)),
            hydra=QueryResult[HydraAnalytics](data=reduce_hydra_clients(clients)),
            is_loading=False,
            is_error=False,
            hydra_enabled=True,
            is_hydra_available=hydra_available,
        )

    return _build


# ============================================================================
# RENDERERS
# ============================================================================


class TestRenderers:

    def test_every_widget_has_a_renderer(self):
        assert set(WIDGET_RENDERERS) == {d.id for d in WIDGET_DEFINITIONS}

    @pytest.mark.parametrize("empty", [False, True])
    def test_renderers_are_total(self, analytics, now, empty):
        ctx = RenderContext(analytics=analytics(empty=empty), now=now)

        for widget_id, render in WIDGET_RENDERERS.items():
            rendered = render(ctx)
            assert "kind" in rendered, widget_id
            assert "title" in rendered, widget_id

    def test_renderers_survive_missing_data(self, now):
        nothing = CombinedAnalytics(
            identity=QueryResult[IdentityAnalytics](is_loading=True),
            session=QueryResult[SessionAnalytics](is_loading=True),
            system=QueryResult[SystemAnalytics](is_loading=True),
            hydra=QueryResult[HydraAnalytics](),
            is_loading=True,
            is_error=False,
            hydra_enabled=False,
            is_hydra_available=False,
        )
        ctx = RenderContext(analytics=nothing, now=now)

        for render in WIDGET_RENDERERS.values():
            render(ctx)

        assert WIDGET_RENDERERS[WidgetId.STAT_KRATOS_HEALTH](ctx)["value"] == "Unknown"

    def test_stat_values(self, analytics, now):
        ctx = RenderContext(analytics=analytics(), now=now)

        assert WIDGET_RENDERERS[WidgetId.STAT_TOTAL_USERS](ctx)["value"] == 3
        assert WIDGET_RENDERERS[WidgetId.STAT_KRATOS_HEALTH](ctx)["value"] == "✓ Healthy"
        growth = WIDGET_RENDERERS[WidgetId.STAT_USER_GROWTH](ctx)
        assert growth["trend"] == {"value": 100.0, "direction": "up"}
        assert growth["sparkline"][0] == {"label": "Week 1", "count": 2}


# ============================================================================
# DERIVED DATA
# ============================================================================


class TestDerivedData:

    def test_verification_rate(self, analytics):
        assert verification_rate(analytics().identity.data) == 67
        assert verification_rate(analytics(empty=True).identity.data) == 0
        assert verification_rate(None) == 0

    def test_flat_growth_has_no_trend(self, analytics):
        assert growth_trend(analytics(empty=True).identity.data) is None

    def test_peak_hours_range_cutoff(self, now):
        stamps = [now.replace(hour=9), now.replace(hour=9) - timedelta(days=3), now.replace(hour=20) - timedelta(days=40)]

        today = peak_hours_bars(stamps, "today", now)
        everything = peak_hours_bars(stamps, "all", now)

        assert len(today) == 24 and today[0]["label"] == "00"
        assert today[9]["value"] == 1
        assert today[20]["value"] == 0
        assert everything[9]["value"] == 2
        assert everything[20]["value"] == 1
        assert peak_hours_bars([], "all", now) == []

    def test_activity_feed_is_merged_newest_first(self, analytics):
        data = analytics()

        feed = activity_feed(data.identity.data, data.session.data)

        assert feed[0]["type"] == "Login"
        assert feed[0]["detail"] == "Method: password"
        assert feed[1]["type"] == "Signup"
        assert feed[1]["id"].startswith("signup-")
        stamps = [item["timestamp"] for item in feed]
        assert stamps == sorted(stamps, reverse=True)

    def test_combined_activity_range(self, analytics):
        data = analytics()

        week = combined_activity_series(data.identity.data, data.session.data, "7d")
        fallback = combined_activity_series(data.identity.data, data.session.data, "bogus")

        assert [s["id"] for s in week] == ["signups", "logins"]
        assert len(week[0]["data"]) == 7
        assert week[0]["data"][-1]["label"] == "Jun 15"
        assert len(fallback[1]["data"]) == 30


# ============================================================================
# VIEW
# ============================================================================


class TestDashboardView:

    def test_hydra_widgets_hidden_when_unavailable(self, analytics, now):
        view = build_dashboard_view(build_default_layout(), analytics(hydra_available=False), now=now)

        ids = [w.i for w in view.widgets]
        assert WidgetId.STAT_HYDRA_HEALTH not in ids
        assert WidgetId.CHART_OAUTH2_GRANT_TYPES not in ids
        assert len(ids) == len(WIDGET_DEFINITIONS) - 2

    def test_hydra_widgets_shown_when_available(self, analytics, now):
        view = build_dashboard_view(build_default_layout(), analytics(), now=now)

        assert len(view.widgets) == len(WIDGET_DEFINITIONS)
        grants = next(w for w in view.widgets if w.i is WidgetId.CHART_OAUTH2_GRANT_TYPES)
        assert grants.data["data"] == [{"name": "authorization_code", "value": 1}]

    def test_wire_shape(self, analytics, now):
        layout = build_default_layout()
        layout = layout.model_copy(update={
            "widgets": layout.widgets[1:],
            "hidden_widgets": [WidgetId.STAT_TOTAL_USERS],
        })

        wire = build_dashboard_view(layout, analytics(), now=now).to_wire()

        assert wire["layoutVersion"] == 17
        assert wire["availableWidgets"][0]["id"] == "stat-total-users"
        assert wire["widgets"][0]["i"] == "stat-active-sessions"
        assert wire["widgets"][0]["data"]["kind"] == "stat"
        assert wire["isHydraAvailable"] is True
