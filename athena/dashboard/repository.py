"""
Remote layout persistence, scoped per principal.

Two backends:
- Redis: Fernet-encrypted blob under ``layout:{principal}:data`` with audit
  and pub/sub events.
- Kratos: the identity's ``metadata_public.dashboardLayout``, merged into the
  existing metadata and written back with a full identity PUT.

Repositories store and return the wire (camelCase) dict as-is; deciding
whether a stored layout is still trusted is the store's job.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from athena.core.logging import get_logger
from athena.core.redis import LAYOUT_PREFIX, RedisManager
from athena.settings import get_settings
from athena.upstream import KratosClient

log = get_logger("athena.layout")

METADATA_KEY = "dashboardLayout"


class LayoutRepository:
    backend = "abstract"

    async def load(self, principal: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def save(self, principal: str, layout: Dict[str, Any]) -> None:
        raise NotImplementedError


class RedisLayoutRepository(LayoutRepository):
    backend = "redis"

    def __init__(self, rm: RedisManager) -> None:
        self.rm = rm

    async def load(self, principal: str) -> Optional[Dict[str, Any]]:
        return await self.rm.get_item(principal, LAYOUT_PREFIX)

    async def save(self, principal: str, layout: Dict[str, Any]) -> None:
        await self.rm.save_item(principal, LAYOUT_PREFIX, layout, str(layout.get("version", "")))


class KratosLayoutRepository(LayoutRepository):
    backend = "kratos"

    def __init__(self, kratos: KratosClient) -> None:
        self.kratos = kratos

    async def load(self, principal: str) -> Optional[Dict[str, Any]]:
        identity = await self.kratos.get_identity(principal)
        metadata = identity.get("metadata_public") or {}
        layout = metadata.get(METADATA_KEY) if isinstance(metadata, dict) else None
        return layout or None

    async def save(self, principal: str, layout: Dict[str, Any]) -> None:
        identity = await self.kratos.get_identity(principal)
        existing = identity.get("metadata_public")
        metadata = dict(existing) if isinstance(existing, dict) else {}
        metadata[METADATA_KEY] = layout
        # Kratos PUT replaces the identity, so every writable field is sent back.
        body = {
            "schema_id": identity.get("schema_id"),
            "traits": identity.get("traits"),
            "metadata_public": metadata,
            "metadata_admin": identity.get("metadata_admin"),
            "state": identity.get("state"),
        }
        await self.kratos.update_identity(principal, body)
        log.debug("Saved dashboard layout into identity metadata: %s", principal)


def build_repository(*, rm: Optional[RedisManager] = None, kratos: Optional[KratosClient] = None) -> LayoutRepository:
    s = get_settings()
    backend = (s.LAYOUT_BACKEND or "redis").strip().lower()
    if backend == "kratos":
        if kratos is None:
            raise ValueError("LAYOUT_BACKEND=kratos requires a Kratos client")
        return KratosLayoutRepository(kratos)
    if backend != "redis":
        log.warning("Unknown LAYOUT_BACKEND=%r; using redis.", s.LAYOUT_BACKEND)
    if rm is None:
        raise ValueError("LAYOUT_BACKEND=redis requires a Redis manager")
    return RedisLayoutRepository(rm)
