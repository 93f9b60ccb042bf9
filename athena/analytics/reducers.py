"""
Metric reducers.

Pure functions turning a raw record collection plus a reference "now" into an
immutable analytics snapshot. No I/O happens here: the aggregator fetches,
resolves geography, and hands the results in.

Bucketed series are always contiguous and zero-filled:
  - daily series: the 30 calendar days ending today (oldest first)
  - weekly series: 4 rolling 7-day windows ending at `now` (oldest first)
  - hourly series: 24 hours of the day
  - yearly series: every year between the first and last observed year
    (latest first)
"""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, Iterable, List, Optional, Sequence, Set

from athena.analytics.types import (
    DayCount,
    GrantTypeCount,
    GrowthDirection,
    HourCount,
    HydraAnalytics,
    IdentityAnalytics,
    MethodCount,
    RecentLogin,
    RecentSignup,
    SchemaCount,
    SessionAnalytics,
    SystemAnalytics,
    SystemHealth,
    VerificationStatus,
    WeekOverWeekGrowth,
    YearCount,
)
from athena.models import (
    GeoPoint,
    IdentityRecord,
    IdentitySchemaRecord,
    OAuth2ClientRecord,
    SessionRecord,
)

DAY_WINDOW = 30
WEEK_WINDOW = 4
RECENT_LIMIT = 20
UNKNOWN = "unknown"


# ------------------- shared helpers -------------------

def percentage_change(current: float, previous: float) -> float:
    """Relative change in percent; 0 when there is no previous value to compare with."""
    if previous > 0:
        return (current - previous) / previous * 100
    return 0.0


def growth_direction(change: float) -> GrowthDirection:
    if change > 0:
        return GrowthDirection.UP
    if change < 0:
        return GrowthDirection.DOWN
    return GrowthDirection.FLAT


def _local_date(ts: datetime, tz: tzinfo) -> date:
    return ts.astimezone(tz).date()


def _day_window(now: datetime, tz: tzinfo, days: int = DAY_WINDOW) -> List[date]:
    today = _local_date(now, tz)
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def _day_bounds(day: date, tz: tzinfo) -> tuple:
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day, time.max, tzinfo=tz)
    return start, end


def _year_series(counts: Dict[int, int]) -> List[YearCount]:
    if not counts:
        return []
    first, last = min(counts), max(counts)
    return [YearCount(year=year, count=counts.get(year, 0)) for year in range(last, first - 1, -1)]


# ------------------- identities -------------------

def reduce_identities(
    identities: Sequence[IdentityRecord],
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> IdentityAnalytics:
    created = [i for i in identities if i.created_at is not None]

    thirty_days_ago = now - timedelta(days=DAY_WINDOW)
    new_last_30 = sum(1 for i in created if i.created_at >= thirty_days_ago)

    per_day = Counter(_local_date(i.created_at, tz) for i in created)
    identities_by_day = [
        DayCount(date=day.isoformat(), count=per_day.get(day, 0)) for day in _day_window(now, tz)
    ]

    per_year = Counter(i.created_at.astimezone(tz).year for i in created)

    per_schema = Counter(i.schema_id or UNKNOWN for i in identities)
    identities_by_schema = [
        SchemaCount(schema=schema, count=count) for schema, count in per_schema.most_common()
    ]

    verified = sum(1 for i in identities if any(a.verified for a in i.verifiable_addresses))

    registrations_by_week: List[int] = []
    for weeks_back in range(WEEK_WINDOW - 1, -1, -1):
        week_start = now - timedelta(days=(weeks_back + 1) * 7)
        week_end = now - timedelta(days=weeks_back * 7)
        registrations_by_week.append(
            sum(1 for i in created if week_start <= i.created_at < week_end)
        )

    current_week, previous_week = registrations_by_week[-1], registrations_by_week[-2]
    change = percentage_change(current_week, previous_week)

    newest_first = sorted(created, key=lambda i: i.created_at, reverse=True)
    recent_signups = [
        RecentSignup(
            id=i.id,
            timestamp=i.created_at,
            email=i.display_name,
            schema_id=i.schema_id or UNKNOWN,
        )
        for i in newest_first[:RECENT_LIMIT]
    ]

    return IdentityAnalytics(
        total_identities=len(identities),
        new_identities_last_30_days=new_last_30,
        identities_by_day=identities_by_day,
        identities_by_year=_year_series(per_year),
        identities_by_schema=identities_by_schema,
        verification_status=VerificationStatus(
            verified=verified, unverified=len(identities) - verified
        ),
        week_over_week_growth=WeekOverWeekGrowth(
            current_week_count=current_week,
            previous_week_count=previous_week,
            percentage_change=round(change, 1),
            direction=growth_direction(change),
        ),
        recent_signups=recent_signups,
        registrations_by_week=registrations_by_week,
        total_growth_4_weeks=sum(registrations_by_week),
        generated_at=now,
    )


# ------------------- sessions -------------------

def collect_device_ips(sessions: Iterable[SessionRecord]) -> List[str]:
    """Every device IP across the sessions; duplicates are kept so clusters count logins."""
    return [d.ip_address for s in sessions for d in s.devices if d.ip_address]


def _active_during(session: SessionRecord, day_start: datetime, day_end: datetime) -> bool:
    if session.authenticated_at > day_end:
        return False
    if session.expires_at is not None and session.expires_at < day_start:
        return False
    return True


def _first_method(session: SessionRecord) -> str:
    for m in session.authentication_methods:
        if m.method:
            return m.method
    return UNKNOWN


def reduce_sessions(
    sessions: Sequence[SessionRecord],
    now: datetime,
    tz: tzinfo = timezone.utc,
    *,
    active_sessions: Optional[int] = None,
    geo_points: Sequence[GeoPoint] = (),
) -> SessionAnalytics:
    authenticated = [s for s in sessions if s.authenticated_at is not None]

    sessions_by_day: List[DayCount] = []
    for day in _day_window(now, tz):
        day_start, day_end = _day_bounds(day, tz)
        count = sum(1 for s in authenticated if _active_during(s, day_start, day_end))
        sessions_by_day.append(DayCount(date=day.isoformat(), count=count))

    durations: List[float] = []
    for s in authenticated:
        end = now if s.expires_at is None else min(s.expires_at, now)
        durations.append(max(0.0, (end - s.authenticated_at).total_seconds()) / 60)
    average_duration = round(sum(durations) / len(durations)) if durations else 0

    seven_days_ago = now - timedelta(days=7)
    sessions_last_7_days = sum(1 for s in authenticated if s.authenticated_at >= seven_days_ago)

    users_by_year: Dict[int, Set[str]] = {}
    for s in authenticated:
        if s.identity is None:
            continue
        users_by_year.setdefault(s.authenticated_at.astimezone(tz).year, set()).add(s.identity.id)
    all_users: Set[str] = set().union(*users_by_year.values()) if users_by_year else set()

    method_counts: Counter = Counter()
    for s in sessions:
        method_counts.update({m.method for m in s.authentication_methods if m.method})
    auth_method_breakdown = [
        MethodCount(method=method, count=count)
        for method, count in sorted(method_counts.items(), key=lambda kv: (-kv[1], kv[0]))
    ]

    per_hour = Counter(s.authenticated_at.astimezone(tz).hour for s in authenticated)
    sessions_by_hour = [HourCount(hour=hour, count=per_hour.get(hour, 0)) for hour in range(24)]

    with_identity = [s for s in authenticated if s.identity is not None]
    with_identity.sort(key=lambda s: s.authenticated_at, reverse=True)
    recent_logins = [
        RecentLogin(
            id=s.id,
            timestamp=s.authenticated_at,
            email=s.identity.display_name,
            method=_first_method(s),
            identity_id=s.identity.id,
        )
        for s in with_identity[:RECENT_LIMIT]
    ]

    return SessionAnalytics(
        total_sessions=len(sessions),
        active_sessions=active_sessions if active_sessions is not None else sum(1 for s in sessions if s.active),
        sessions_by_day=sessions_by_day,
        average_session_duration=average_duration,
        sessions_last_7_days=sessions_last_7_days,
        auth_method_breakdown=auth_method_breakdown,
        sessions_by_hour=sessions_by_hour,
        recent_logins=recent_logins,
        session_geo_points=list(geo_points),
        total_active_users=len(all_users),
        active_users_by_year=_year_series({year: len(ids) for year, ids in users_by_year.items()}),
        session_timestamps=[s.authenticated_at for s in authenticated],
        generated_at=now,
    )


# ------------------- system -------------------

def reduce_system(schemas: Sequence[IdentitySchemaRecord], now: datetime) -> SystemAnalytics:
    return SystemAnalytics(
        total_schemas=len(schemas),
        system_health=SystemHealth.HEALTHY,
        last_updated=now,
    )


# ------------------- hydra -------------------

def reduce_hydra_clients(clients: Sequence[OAuth2ClientRecord]) -> HydraAnalytics:
    public = sum(1 for c in clients if c.is_public)

    grant_counts: Counter = Counter()
    for c in clients:
        grant_counts.update(set(c.grant_types))

    return HydraAnalytics(
        total_clients=len(clients),
        public_clients=public,
        confidential_clients=len(clients) - public,
        clients_by_grant_type=[
            GrantTypeCount(grant_type=grant, count=count)
            for grant, count in sorted(grant_counts.items(), key=lambda kv: (-kv[1], kv[0]))
        ],
        system_health=SystemHealth.HEALTHY,
    )
