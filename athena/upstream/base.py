from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import httpx

from athena.core.logging import get_logger

log = get_logger("athena.upstream")


class UpstreamError(RuntimeError):
    """An upstream (Kratos / Hydra) call failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class _HttpBase:
    """
    Thin async JSON client around httpx.

    The underlying AsyncClient can be injected (tests use MockTransport);
    otherwise one is created and owned by this instance.
    """

    service_name = "upstream"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"accept": "application/json"}
        if api_key:
            # Ory Network project API keys
            headers["authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        json: Optional[Any] = None,
    ) -> httpx.Response:
        url = self.base_url + (path if path.startswith("/") else f"/{path}")
        try:
            resp = await self._client.request(
                method.upper(), url, params=params, json=json, headers=self._headers
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.service_name} connection error: {e}") from e

        if resp.status_code >= 400:
            try:
                err: Any = resp.json()
            except ValueError:
                err = {"status": resp.status_code, "message": resp.text[:200]}
            raise UpstreamError(
                f"{self.service_name} HTTP {resp.status_code} {method.upper()} {path}: {err}",
                status_code=resp.status_code,
            )
        return resp

    async def _get_json(self, path: str, *, params: Any = None) -> Any:
        resp = await self._request("GET", path, params=params)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamError(f"{self.service_name} returned non-JSON for {path}") from e

    async def _get_page(self, path: str, *, params: Any = None) -> Tuple[List[Any], Optional[str]]:
        """One page of a list endpoint plus the next `page_token` (Link header, rel=next)."""
        resp = await self._request("GET", path, params=params)
        try:
            items = resp.json() if resp.content else []
        except ValueError as e:
            raise UpstreamError(f"{self.service_name} returned non-JSON for {path}") from e
        if not isinstance(items, list):
            raise UpstreamError(f"{self.service_name} returned a non-list page for {path}")

        next_url = resp.links.get("next", {}).get("url")
        token = httpx.URL(next_url).params.get("page_token") if next_url else None
        return items, token or None

    async def _paginate(
        self,
        path: str,
        *,
        params: Dict[str, Any],
        page_size: int,
        max_pages: int,
    ) -> List[Any]:
        collected: List[Any] = []
        token: Optional[str] = None
        for page in range(1, max_pages + 1):
            query = list(_as_pairs(params)) + [("page_size", page_size)]
            if token:
                query.append(("page_token", token))
            items, token = await self._get_page(path, params=query)
            collected.extend(items)
            log.debug("%s %s: fetched %d items (page %d)", self.service_name, path, len(collected), page)
            if not token or not items:
                break
        return collected

    async def is_alive(self) -> bool:
        resp = await self._request("GET", "/health/alive")
        return resp.status_code == 200

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _as_pairs(params: Dict[str, Any]):
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            for v in value:
                yield key, v
        elif isinstance(value, bool):
            yield key, "true" if value else "false"
        else:
            yield key, value
