"""
IP geolocation: resolves device IPs to coordinates and clusters them for the
session map.

Uses a bulk lookup endpoint (ip-api.com batch by default, 100 IPs per
request). Answers are cached for the process lifetime; the cache is
append-only and an entry is written once, either a GeoResult or an
Unresolvable marker. Geography is best-effort: a failed batch marks its IPs
unresolvable and is never retried.
"""

from __future__ import annotations

import ipaddress
import math
from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Union

import httpx

from athena.core.logging import get_logger
from athena.models import GeoPoint, GeoResult, Unresolvable
from athena.settings import get_settings

log = get_logger("athena.geo")

GeoLookup = Union[GeoResult, Unresolvable]

# 0.5 degree is roughly 50 km: enough to fold a metro area into one point.
CLUSTER_RESOLUTION = 0.5


def is_local_ip(ip: str) -> bool:
    """Private, loopback, link-local, unspecified, reserved or unparseable addresses."""
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return True
    return (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_unspecified
        or addr.is_reserved
        or addr.is_multicast
    )


def _to_geo_result(entry: dict) -> Optional[GeoResult]:
    if entry.get("status") != "success" or entry.get("lat") is None or entry.get("lon") is None:
        return None
    city = entry.get("city") or ""
    country = entry.get("country") or ""
    country_code = entry.get("countryCode") or ""
    if city and country_code:
        label = f"{city}, {country_code}"
    else:
        label = country or "Unknown"
    return GeoResult(
        ip=str(entry.get("query")),
        lat=float(entry["lat"]),
        lng=float(entry["lon"]),
        city=city or "Unknown",
        country=country or "Unknown",
        country_code=country_code,
        label=label,
    )


class GeoResolver:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        batch_url: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        s = get_settings()
        self._client = client or httpx.AsyncClient(timeout=s.GEO_TIMEOUT_SEC)
        self._owns_client = client is None
        self.batch_url = batch_url or s.GEO_BATCH_URL
        self.batch_size = max(1, batch_size or s.GEO_BATCH_SIZE)
        self._cache: Dict[str, GeoLookup] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def lookup(self, ip: str) -> Optional[GeoLookup]:
        return self._cache.get(ip)

    def _remember(self, ip: str, value: GeoLookup) -> None:
        # replace-once: the first answer for an IP is final
        self._cache.setdefault(ip, value)

    async def _resolve_batch(self, batch: List[str]) -> None:
        try:
            resp = await self._client.post(self.batch_url, json=batch)
            resp.raise_for_status()
            answers = resp.json()
            if not isinstance(answers, list):
                raise ValueError(f"unexpected batch payload: {type(answers).__name__}")
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("IP batch resolution failed (%d ips): %s", len(batch), exc)
            for ip in batch:
                self._remember(ip, Unresolvable(ip=ip, reason="lookup-failed"))
            return

        for entry in answers:
            if not isinstance(entry, dict) or not entry.get("query"):
                continue
            ip = str(entry["query"])
            try:
                result = _to_geo_result(entry)
            except (TypeError, ValueError):
                log.warning("Malformed geo answer for %s", ip)
                self._remember(ip, Unresolvable(ip=ip, reason="malformed"))
                continue
            self._remember(ip, result or Unresolvable(ip=ip, reason=str(entry.get("status") or "fail")))
        # IPs the service silently dropped are not asked again either
        for ip in batch:
            self._remember(ip, Unresolvable(ip=ip, reason="missing-from-response"))

    async def resolve_ips(self, ips: Sequence[str]) -> List[GeoResult]:
        """
        Resolve IPs to coordinates. Returns one GeoResult per resolved input
        occurrence (duplicates preserved, input order); unresolvable IPs are
        omitted. Never raises on lookup failures.
        """
        pending: List[str] = []
        for ip in dict.fromkeys(ips):
            if ip in self._cache:
                continue
            if is_local_ip(ip):
                self._remember(ip, Unresolvable(ip=ip, reason="local"))
                continue
            pending.append(ip)

        for start in range(0, len(pending), self.batch_size):
            await self._resolve_batch(pending[start:start + self.batch_size])

        results: List[GeoResult] = []
        for ip in ips:
            hit = self._cache.get(ip)
            if isinstance(hit, GeoResult):
                results.append(hit)
        return results

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _round_to_grid(value: float) -> float:
    # half-up, so that x.25 and x.75 do not depend on banker's rounding
    steps = 1 / CLUSTER_RESOLUTION
    return math.floor(value * steps + 0.5) / steps


def cluster_geo_results(results: Iterable[GeoResult]) -> List[GeoPoint]:
    """
    Group resolved points into 0.5 degree cells.

    The label is the most frequent member label (ties: alphabetical) so the
    output does not depend on input order.
    """
    cells: Dict[tuple, Counter] = defaultdict(Counter)
    for r in results:
        cells[(_round_to_grid(r.lat), _round_to_grid(r.lng))][r.label] += 1

    points = []
    for (lat, lng), labels in cells.items():
        label = min(labels.items(), key=lambda kv: (-kv[1], kv[0]))[0]
        points.append(GeoPoint(lat=lat, lng=lng, label=label, count=sum(labels.values())))
    points.sort(key=lambda p: (-p.count, p.lat, p.lng))
    return points
