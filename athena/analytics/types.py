from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from athena.models import GeoPoint

T = TypeVar("T")


class Snapshot(BaseModel):
    """Immutable metric value object, serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class GrowthDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    FLAT = "flat"


class SystemHealth(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"


class DayCount(Snapshot):
    date: str
    count: int


class YearCount(Snapshot):
    year: int
    count: int


class HourCount(Snapshot):
    hour: int
    count: int


class SchemaCount(Snapshot):
    schema_id: str = Field(alias="schema")
    count: int


class MethodCount(Snapshot):
    method: str
    count: int


class GrantTypeCount(Snapshot):
    grant_type: str
    count: int


class VerificationStatus(Snapshot):
    verified: int
    unverified: int


class WeekOverWeekGrowth(Snapshot):
    current_week_count: int
    previous_week_count: int
    percentage_change: float
    direction: GrowthDirection


class RecentSignup(Snapshot):
    id: str
    timestamp: datetime
    email: str
    schema_id: str


class RecentLogin(Snapshot):
    id: str
    timestamp: datetime
    email: str
    method: str
    identity_id: str


class IdentityAnalytics(Snapshot):
    total_identities: int
    new_identities_last_30_days: int
    identities_by_day: List[DayCount]
    identities_by_year: List[YearCount]
    identities_by_schema: List[SchemaCount]
    verification_status: VerificationStatus
    week_over_week_growth: WeekOverWeekGrowth
    recent_signups: List[RecentSignup]
    registrations_by_week: List[int]
    total_growth_4_weeks: int
    generated_at: datetime


class SessionAnalytics(Snapshot):
    total_sessions: int
    active_sessions: int
    sessions_by_day: List[DayCount]
    average_session_duration: int
    sessions_last_7_days: int
    auth_method_breakdown: List[MethodCount]
    sessions_by_hour: List[HourCount]
    recent_logins: List[RecentLogin]
    session_geo_points: List[GeoPoint]
    total_active_users: int
    active_users_by_year: List[YearCount]
    session_timestamps: List[datetime]
    generated_at: datetime


class SystemAnalytics(Snapshot):
    total_schemas: int
    system_health: SystemHealth
    last_updated: datetime


class HydraAnalytics(Snapshot):
    total_clients: int
    public_clients: int
    confidential_clients: int
    clients_by_grant_type: List[GrantTypeCount]
    consent_sessions: int = 0
    tokens_issued: int = 0
    system_health: SystemHealth

    @classmethod
    def unavailable(cls) -> "HydraAnalytics":
        """Zeroed snapshot reported when the OAuth2 service cannot be read."""
        return cls(
            total_clients=0,
            public_clients=0,
            confidential_clients=0,
            clients_by_grant_type=[],
            system_health=SystemHealth.ERROR,
        )


class QueryResult(Snapshot, Generic[T]):
    """The loading / error / data contract handed to the view layer."""

    data: Optional[T] = None
    is_loading: bool = False
    is_error: bool = False
    error: Optional[str] = None
    updated_at: Optional[datetime] = None


class HealthStatus(Snapshot):
    is_healthy: bool
    disabled: bool = False
    error: Optional[str] = None
    checked_at: Optional[datetime] = None


class CombinedAnalytics(Snapshot):
    identity: QueryResult[IdentityAnalytics]
    session: QueryResult[SessionAnalytics]
    system: QueryResult[SystemAnalytics]
    hydra: QueryResult[HydraAnalytics]
    kratos_health: Optional[HealthStatus] = None
    hydra_health: Optional[HealthStatus] = None
    is_loading: bool
    is_error: bool
    error: Optional[str] = None
    hydra_enabled: bool
    is_hydra_available: bool

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
