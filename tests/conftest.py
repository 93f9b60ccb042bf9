"""
Pytest configuration and fixtures.

Provides reusable record factories, a fixed clock and in-memory layout
channels for testing the analytics and dashboard components.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

# Settings read the environment at import time: configure before importing athena
os.environ.setdefault("ATHENA_CRYPT_KEY", "test-crypt-key-for-athena-unit-tests")
os.environ.setdefault("ATHENA_API_KEYS", '["admin-test-key"]')
os.environ.setdefault("LAYOUT_DEBOUNCE_MS", "20")
os.environ.setdefault("HYDRA_ENABLED", "true")
os.environ.setdefault("ORY_NETWORK", "false")
os.environ.setdefault("LAYOUT_BACKEND", "redis")

from athena.models import IdentityRecord, SessionRecord  # noqa: E402


NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


# ============================================================================
# CLOCK
# ============================================================================


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# RECORD FACTORIES
# ============================================================================


@pytest.fixture
def make_identity():
    counter = {"n": 0}

    def _make(
        created_at: Optional[datetime] = None,
        *,
        schema_id: str = "default",
        email: Optional[str] = None,
        verified: bool = False,
        identity_id: Optional[str] = None,
    ) -> IdentityRecord:
        counter["n"] += 1
        iid = identity_id or f"id-{counter['n']}"
        return IdentityRecord.model_validate({
            "id": iid,
            "schema_id": schema_id,
            "state": "active",
            "created_at": created_at.isoformat() if created_at else None,
            "traits": {"email": email or f"{iid}@example.com"},
            "verifiable_addresses": [{"value": email or f"{iid}@example.com", "via": "email", "verified": verified}],
        })

    return _make


@pytest.fixture
def make_session():
    counter = {"n": 0}

    def _make(
        authenticated_at: Optional[datetime],
        *,
        expires_at: Optional[datetime] = None,
        identity_id: Optional[str] = "user-1",
        method: Optional[str] = "password",
        ips: Optional[List[str]] = None,
        active: bool = True,
    ) -> SessionRecord:
        counter["n"] += 1
        payload: Dict[str, Any] = {
            "id": f"sess-{counter['n']}",
            "active": active,
            "authenticated_at": authenticated_at.isoformat() if authenticated_at else None,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "devices": [{"ip_address": ip} for ip in (ips or [])],
            "authentication_methods": [{"method": method}] if method else [],
        }
        if identity_id:
            payload["identity"] = {"id": identity_id, "traits": {"email": f"{identity_id}@example.com"}}
        return SessionRecord.model_validate(payload)

    return _make


# ============================================================================
# LAYOUT CHANNELS
# ============================================================================


class MemoryChannel:
    """LayoutChannel keeping the saved payloads in memory."""

    def __init__(self, stored: Optional[Dict[str, Any]] = None, *, fail_load: bool = False, fail_save: bool = False):
        self.stored = stored
        self.saves: List[Dict[str, Any]] = []
        self.loads = 0
        self.fail_load = fail_load
        self.fail_save = fail_save

    async def load(self) -> Optional[Dict[str, Any]]:
        self.loads += 1
        if self.fail_load:
            raise ConnectionError("layout backend unreachable")
        return self.stored

    async def save(self, layout: Dict[str, Any]) -> None:
        if self.fail_save:
            raise ConnectionError("layout backend unreachable")
        self.saves.append(layout)
        self.stored = layout


class MemoryRepository:
    """LayoutRepository keyed by principal."""

    backend = "memory"

    def __init__(self):
        self.items: Dict[str, Dict[str, Any]] = {}
        self.saves: List[tuple] = []

    async def load(self, principal: str) -> Optional[Dict[str, Any]]:
        return self.items.get(principal)

    async def save(self, principal: str, layout: Dict[str, Any]) -> None:
        self.saves.append((principal, layout))
        self.items[principal] = layout


@pytest.fixture
def channel() -> MemoryChannel:
    return MemoryChannel()


@pytest.fixture
def make_channel():
    return MemoryChannel


@pytest.fixture
def memory_repository() -> MemoryRepository:
    return MemoryRepository()
