from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx

from athena.models import (
    IdentityRecord,
    IdentitySchemaRecord,
    SessionRecord,
    parse_records,
    parse_timestamp,
)
from athena.settings import get_settings
from athena.upstream.base import _HttpBase, _as_pairs, log


class KratosClient(_HttpBase):
    """Kratos admin API: the identity listings the analytics reducers consume."""

    service_name = "kratos"

    @classmethod
    def from_settings(cls, client: Optional[httpx.AsyncClient] = None) -> "KratosClient":
        s = get_settings()
        return cls(
            s.KRATOS_ADMIN_URL,
            api_key=s.KRATOS_API_KEY,
            timeout=s.UPSTREAM_TIMEOUT_SEC,
            client=client,
        )

    # ---- identities ----
    async def list_identities(self, *, page_size: int = 250, max_pages: int = 20) -> List[IdentityRecord]:
        raw = await self._paginate(
            "/admin/identities", params={}, page_size=page_size, max_pages=max_pages
        )
        log.info("Analytics: fetched %d identities", len(raw))
        return parse_records(IdentityRecord, raw)

    async def get_identity(self, identity_id: str) -> Dict[str, Any]:
        return await self._get_json(f"/admin/identities/{quote(identity_id, safe='')}")

    async def update_identity(self, identity_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self._request("PUT", f"/admin/identities/{quote(identity_id, safe='')}", json=body)
        return resp.json() if resp.content else {}

    # ---- sessions ----
    async def list_sessions_until(
        self,
        until: datetime,
        *,
        page_size: int = 250,
        max_pages: int = 10,
        active: Optional[bool] = None,
        expand: Sequence[str] = ("identity", "devices"),
    ) -> List[SessionRecord]:
        """
        Sessions newest-first, stopping at the page that reaches past `until`
        (or after `max_pages`). Sessions authenticated before `until` are
        dropped.
        """
        params: Dict[str, Any] = {"active": active, "expand": list(expand)}
        raw: List[Any] = []
        token: Optional[str] = None
        for page in range(1, max_pages + 1):
            query: List[Any] = list(_as_pairs(params))
            query.append(("page_size", page_size))
            if token:
                query.append(("page_token", token))
            items, token = await self._get_page("/admin/sessions", params=query)
            raw.extend(items)
            log.debug("kratos sessions: fetched %d (page %d)", len(raw), page)

            stamps = [parse_timestamp(i.get("authenticated_at")) for i in items if isinstance(i, dict)]
            stamps = [t for t in stamps if t is not None]
            if not token or not items or (stamps and min(stamps) < until):
                break

        sessions = parse_records(SessionRecord, raw)
        log.info("Analytics: fetched %d sessions", len(sessions))
        return [s for s in sessions if s.authenticated_at is None or s.authenticated_at >= until]

    async def count_active_sessions(self, *, page_size: int = 250, max_pages: int = 10) -> int:
        raw = await self._paginate(
            "/admin/sessions",
            params={"active": True},
            page_size=page_size,
            max_pages=max_pages,
        )
        return len(raw)

    # ---- schemas ----
    async def list_identity_schemas(self) -> List[IdentitySchemaRecord]:
        raw = await self._get_json("/schemas")
        return parse_records(IdentitySchemaRecord, raw if isinstance(raw, list) else [])
