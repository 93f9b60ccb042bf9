from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

log = logging.getLogger("athena.models")

R = TypeVar("R", bound=BaseModel)

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Lenient RFC3339 parsing for upstream timestamps.

    Kratos emits nanosecond fractions which `datetime.fromisoformat` rejects,
    so the fraction is truncated to microseconds. Unparseable input yields
    None; naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        raw = _FRACTION_RE.sub(r"\1", value.strip())
        if raw.endswith("Z") or raw.endswith("z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _UpstreamRecord(BaseModel):
    # Upstream payloads carry far more than the reducers read.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# ------------------- Kratos records -------------------

class VerifiableAddress(_UpstreamRecord):
    value: Optional[str] = None
    via: Optional[str] = None
    verified: bool = False

    @field_validator("verified", mode="before")
    @classmethod
    def _none_is_false(cls, v: Any) -> Any:
        return False if v is None else v


class IdentityRecord(_UpstreamRecord):
    id: str
    schema_id: Optional[str] = None
    state: Optional[str] = None
    created_at: Optional[datetime] = None
    traits: Dict[str, Any] = Field(default_factory=dict)
    verifiable_addresses: List[VerifiableAddress] = Field(default_factory=list)
    metadata_public: Optional[Dict[str, Any]] = None
    metadata_admin: Optional[Dict[str, Any]] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _lenient_created_at(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator("traits", mode="before")
    @classmethod
    def _traits_default(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}

    @field_validator("verifiable_addresses", mode="before")
    @classmethod
    def _addresses_default(cls, v: Any) -> Any:
        return v or []

    @property
    def display_name(self) -> str:
        return str(self.traits.get("email") or self.traits.get("username") or self.id)


class DeviceRecord(_UpstreamRecord):
    id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None


class AuthenticationMethod(_UpstreamRecord):
    method: Optional[str] = None
    aal: Optional[str] = None
    completed_at: Optional[datetime] = None

    @field_validator("completed_at", mode="before")
    @classmethod
    def _lenient_completed_at(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)


class SessionRecord(_UpstreamRecord):
    id: str
    active: Optional[bool] = None
    authenticated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    identity: Optional[IdentityRecord] = None
    devices: List[DeviceRecord] = Field(default_factory=list)
    authentication_methods: List[AuthenticationMethod] = Field(default_factory=list)

    @field_validator("authenticated_at", "expires_at", mode="before")
    @classmethod
    def _lenient_timestamps(cls, v: Any) -> Optional[datetime]:
        return parse_timestamp(v)

    @field_validator("devices", "authentication_methods", mode="before")
    @classmethod
    def _lists_default(cls, v: Any) -> Any:
        return v or []

    @field_validator("identity", mode="before")
    @classmethod
    def _drop_broken_identity(cls, v: Any) -> Any:
        # A session without a readable identity still counts as a session.
        if isinstance(v, dict) and not v.get("id"):
            return None
        return v


class IdentitySchemaRecord(_UpstreamRecord):
    id: str
    schema_: Dict[str, Any] = Field(default_factory=dict, alias="schema")


# ------------------- Hydra records -------------------

class OAuth2ClientRecord(_UpstreamRecord):
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    token_endpoint_auth_method: Optional[str] = None
    grant_types: List[str] = Field(default_factory=list)

    @field_validator("grant_types", mode="before")
    @classmethod
    def _grant_types_default(cls, v: Any) -> Any:
        return v or []

    @property
    def is_public(self) -> bool:
        return self.token_endpoint_auth_method == "none"


def parse_records(model: Type[R], items: Iterable[Any]) -> List[R]:
    """Validate upstream payloads, skipping (and logging) malformed entries."""
    records: List[R] = []
    skipped = 0
    for item in items or []:
        try:
            records.append(model.model_validate(item))
        except ValidationError as exc:
            skipped += 1
            log.debug("Skipping malformed %s: %s", model.__name__, exc)
    if skipped:
        log.warning("Skipped %d malformed %s record(s)", skipped, model.__name__)
    return records


# ------------------- Geo -------------------

class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GeoResult(_WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    ip: str
    lat: float
    lng: float
    city: str = "Unknown"
    country: str = "Unknown"
    country_code: str = ""
    label: str = "Unknown"


class Unresolvable(_WireModel):
    """Cache marker for an IP that will not be looked up again."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    ip: str
    reason: str


class GeoPoint(_WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    lat: float
    lng: float
    label: str
    count: int


# ------------------- Dashboard layout -------------------

class WidgetId(str, Enum):
    STAT_TOTAL_USERS = "stat-total-users"
    STAT_ACTIVE_SESSIONS = "stat-active-sessions"
    STAT_AVG_SESSION = "stat-avg-session"
    STAT_USER_GROWTH = "stat-user-growth"
    STAT_KRATOS_HEALTH = "stat-kratos-health"
    STAT_HYDRA_HEALTH = "stat-hydra-health"
    CHART_COMBINED_ACTIVITY = "chart-combined-activity"
    CHART_USERS_BY_SCHEMA = "chart-users-by-schema"
    CHART_VERIFICATION_GAUGE = "chart-verification-gauge"
    CHART_PEAK_HOURS = "chart-peak-hours"
    CHART_ACTIVITY_FEED = "chart-activity-feed"
    CHART_OAUTH2_GRANT_TYPES = "chart-oauth2-grant-types"
    CHART_SESSION_LOCATIONS = "chart-session-locations"


class WidgetCategory(str, Enum):
    STAT = "stat"
    CHART = "chart"


class WidgetDefinition(_WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: WidgetId
    title: str
    description: str
    icon: str
    category: WidgetCategory
    default_w: int = Field(ge=1)
    default_h: int = Field(ge=1)
    min_w: Optional[int] = None
    min_h: Optional[int] = None
    max_w: Optional[int] = None
    max_h: Optional[int] = None
    requires_hydra: bool = False


class WidgetLayoutItem(_WireModel):
    i: WidgetId
    x: int = Field(ge=0)
    y: int = Field(ge=0)
    w: int = Field(ge=1)
    h: int = Field(ge=1)
    min_w: Optional[int] = None
    min_h: Optional[int] = None
    max_w: Optional[int] = None
    max_h: Optional[int] = None


class DashboardLayout(_WireModel):
    widgets: List[WidgetLayoutItem] = Field(default_factory=list)
    hidden_widgets: List[WidgetId] = Field(default_factory=list)
    version: int

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def placed_ids(self) -> List[WidgetId]:
        return [item.i for item in self.widgets]
