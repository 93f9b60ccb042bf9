from __future__ import annotations

from typing import List, Optional

import httpx

from athena.models import OAuth2ClientRecord, parse_records
from athena.settings import get_settings
from athena.upstream.base import _HttpBase


class HydraClient(_HttpBase):
    """Hydra admin API: OAuth2 client listing for the hydra reducer."""

    service_name = "hydra"

    @classmethod
    def from_settings(cls, client: Optional[httpx.AsyncClient] = None) -> "HydraClient":
        s = get_settings()
        return cls(
            s.HYDRA_ADMIN_URL,
            api_key=s.HYDRA_API_KEY,
            timeout=s.UPSTREAM_TIMEOUT_SEC,
            client=client,
        )

    async def list_oauth2_clients(self, *, page_size: int = 500) -> List[OAuth2ClientRecord]:
        # single bounded page; dashboards do not need more than that
        items, _ = await self._get_page("/admin/clients", params={"page_size": page_size})
        return parse_records(OAuth2ClientRecord, items)
