"""
Athena Python SDK: dashboard layout channel

Drives a LayoutStore from outside the service, persisting through the
layout endpoint (GET/PUT /api/dashboard/layout) as the logged-in user.

Auth:
- Cookie: athena-session = ATHENA_SESSION (env)

Env:
- ATHENA_BASE_URL (default: http://localhost:8000)
- ATHENA_SESSION   <- session cookie value for the principal
"""

from __future__ import annotations

import os
from typing import Any, Dict, Optional

import httpx
from dotenv import load_dotenv

from athena.dashboard.store import LayoutStore

load_dotenv()

DEFAULT_BASE_URL = os.getenv("ATHENA_BASE_URL", "http://localhost:8000")
SESSION_COOKIE = os.getenv("ATHENA_SESSION_COOKIE", "athena-session")
LAYOUT_PATH = "/api/dashboard/layout"


class HttpLayoutChannel:
    """LayoutChannel over HTTP. The httpx client may be injected (tests use MockTransport)."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        session: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or os.getenv("ATHENA_SESSION")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(self, method: str, *, data: Optional[dict] = None) -> Any:
        if not self.session:
            raise RuntimeError("Missing ATHENA_SESSION for layout operations.")
        try:
            resp = await self._client.request(
                method,
                self.base_url + LAYOUT_PATH,
                json=data,
                headers={"accept": "application/json", "cookie": f"{SESSION_COOKIE}={self.session}"},
            )
        except httpx.HTTPError as e:
            raise RuntimeError(f"Connection error: {e}") from None

        if resp.status_code >= 400:
            try:
                err = resp.json()
            except ValueError:
                err = {"status": resp.status_code, "message": resp.reason_phrase}
            raise RuntimeError(f"HTTP {resp.status_code} {resp.reason_phrase}: {err}")
        return resp.json() if resp.content else {}

    async def load(self) -> Optional[Dict[str, Any]]:
        data = await self._request("GET")
        return data.get("layout") if isinstance(data, dict) else None

    async def save(self, layout: Dict[str, Any]) -> None:
        await self._request("PUT", data={"layout": layout})

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


async def open_layout_store(
    base_url: str = DEFAULT_BASE_URL,
    *,
    session: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> LayoutStore:
    """Initialized LayoutStore for the session's principal."""
    store = LayoutStore(HttpLayoutChannel(base_url, session=session, client=client))
    await store.initialize()
    return store
