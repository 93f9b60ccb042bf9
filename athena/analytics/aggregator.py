"""
Analytics aggregator.

Composition root for the dashboard metrics: waits for configuration, runs
the health gate per upstream service, and only for healthy services invokes
the corresponding reducers' fetches. Exposes every domain through the same
loading / error / data contract plus combined flags for the view.

Kratos (identity, session, system) is mandatory: an unhealthy Kratos or a
failed Kratos domain is an aggregate error. Hydra is optional: disabled or
unhealthy Hydra only hides the widgets that need it.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta, timezone, tzinfo
from typing import List, Optional
from zoneinfo import ZoneInfo

from athena.analytics.geo import GeoResolver, cluster_geo_results
from athena.analytics.health import Clock, HealthGate, Service, utcnow
from athena.analytics.queries import DomainQuery
from athena.analytics.reducers import (
    collect_device_ips,
    reduce_hydra_clients,
    reduce_identities,
    reduce_sessions,
    reduce_system,
)
from athena.analytics.types import (
    CombinedAnalytics,
    HealthStatus,
    HydraAnalytics,
    IdentityAnalytics,
    SessionAnalytics,
    SystemAnalytics,
)
from athena.core.logging import get_logger
from athena.settings import Settings, get_settings
from athena.upstream import HydraClient, KratosClient

log = get_logger("athena.analytics")


def resolve_timezone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


class AnalyticsAggregator:
    def __init__(
        self,
        kratos: KratosClient,
        hydra: HydraClient,
        geo: GeoResolver,
        *,
        gate: Optional[HealthGate] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        s = settings or get_settings()
        self.settings = s
        self.kratos = kratos
        self.hydra = hydra
        self.geo = geo
        self.hydra_enabled = s.HYDRA_ENABLED
        self.is_managed_cloud = s.ORY_NETWORK
        self.tz = resolve_timezone(s.ANALYTICS_TIMEZONE)
        self._clock = clock
        self.gate = gate or HealthGate(
            {Service.KRATOS: kratos.is_alive, Service.HYDRA: hydra.is_alive},
            retries=s.HEALTH_RETRIES,
            backoff=s.HEALTH_BACKOFF_SEC,
            cache_for=timedelta(seconds=s.HEALTH_CACHE_SEC),
            clock=clock,
        )

        def query(name, fetcher, snapshot_type, stale, interval) -> DomainQuery:
            return DomainQuery(
                name,
                fetcher,
                snapshot_type,
                stale_after=timedelta(seconds=stale),
                refetch_interval=timedelta(seconds=interval),
                clock=clock,
            )

        self.identity = query("identity", self._fetch_identity, IdentityAnalytics, s.IDENTITY_STALE_SEC, s.IDENTITY_REFRESH_SEC)
        self.session = query("session", self._fetch_session, SessionAnalytics, s.SESSION_STALE_SEC, s.SESSION_REFRESH_SEC)
        self.system = query("system", self._fetch_system, SystemAnalytics, s.SYSTEM_STALE_SEC, s.SYSTEM_REFRESH_SEC)
        self.hydra_query = query("hydra", self._fetch_hydra, HydraAnalytics, s.HYDRA_STALE_SEC, s.HYDRA_REFRESH_SEC)

        self._settings_ready = asyncio.Event()
        self._kratos_health: Optional[HealthStatus] = None
        self._hydra_health: Optional[HealthStatus] = None
        self._tasks: List[asyncio.Task] = []

    # ------------------- readiness -------------------
    @property
    def settings_loaded(self) -> bool:
        return self._settings_ready.is_set()

    def mark_settings_loaded(self) -> None:
        self._settings_ready.set()

    @property
    def _kratos_queries(self) -> List[DomainQuery]:
        return [self.identity, self.session, self.system]

    # ------------------- fetchers -------------------
    async def _fetch_identity(self) -> IdentityAnalytics:
        s = self.settings
        identities = await self.kratos.list_identities(
            page_size=s.ANALYTICS_IDENTITY_PAGE_SIZE,
            max_pages=s.ANALYTICS_IDENTITY_MAX_PAGES,
        )
        return reduce_identities(identities, self._clock(), self.tz)

    async def _fetch_session(self) -> SessionAnalytics:
        s = self.settings
        now = self._clock()
        sessions, active = await asyncio.gather(
            self.kratos.list_sessions_until(
                now - timedelta(days=s.ANALYTICS_SESSION_LOOKBACK_DAYS),
                page_size=s.ANALYTICS_SESSION_PAGE_SIZE,
                max_pages=s.ANALYTICS_SESSION_MAX_PAGES,
                expand=("identity", "devices"),
            ),
            self.kratos.count_active_sessions(
                page_size=s.ANALYTICS_SESSION_PAGE_SIZE,
                max_pages=s.ANALYTICS_SESSION_MAX_PAGES,
            ),
        )
        geo_points = []
        ips = collect_device_ips(sessions)
        if ips:
            try:
                geo_points = cluster_geo_results(await self.geo.resolve_ips(ips))
            except Exception as exc:
                log.warning("IP geolocation failed: %s", exc)
        return reduce_sessions(sessions, now, self.tz, active_sessions=active, geo_points=geo_points)

    async def _fetch_system(self) -> SystemAnalytics:
        schemas = await self.kratos.list_identity_schemas()
        return reduce_system(schemas, self._clock())

    async def _fetch_hydra(self) -> HydraAnalytics:
        try:
            clients = await self.hydra.list_oauth2_clients(page_size=self.settings.ANALYTICS_CLIENT_PAGE_SIZE)
        except Exception:
            log.exception("Failed to fetch Hydra analytics")
            return HydraAnalytics.unavailable()
        return reduce_hydra_clients(clients)

    # ------------------- gated refresh -------------------
    async def _check(self, service: Service, *, force: bool) -> HealthStatus:
        if force:
            self.gate.invalidate(service)
        if service is Service.KRATOS:
            status = await self.gate.check_health(service, self.is_managed_cloud)
            self._kratos_health = status
            for q in self._kratos_queries:
                q.enabled = status.is_healthy
        else:
            status = await self.gate.check_health(service, self.is_managed_cloud, enabled=self.hydra_enabled)
            self._hydra_health = status
            self.hydra_query.enabled = status.is_healthy
        return status

    async def _kratos_chain(self, force: bool) -> None:
        status = await self._check(Service.KRATOS, force=force)
        if status.is_healthy:
            await asyncio.gather(*(q.fetch(force=force) for q in self._kratos_queries))

    async def _hydra_chain(self, force: bool) -> None:
        status = await self._check(Service.HYDRA, force=force)
        if status.is_healthy:
            await self.hydra_query.fetch(force=force)

    async def refresh(self, *, force: bool = False) -> None:
        """Health-check both services, then fetch whatever is stale and allowed."""
        await self._settings_ready.wait()
        await asyncio.gather(self._kratos_chain(force), self._hydra_chain(force))

    async def refetch_all(self) -> None:
        await self.refresh(force=True)

    async def _refresh_domain(self, query: DomainQuery) -> None:
        await self._settings_ready.wait()
        service = Service.HYDRA if query is self.hydra_query else Service.KRATOS
        status = await self._check(service, force=False)
        if status.is_healthy:
            await query.fetch(force=True)

    # ------------------- background refresh -------------------
    async def _refresh_loop(self, query: DomainQuery) -> None:
        interval = query.refetch_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                await self._refresh_domain(query)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Background refresh failed for %s", query.name)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self.refresh()))
        for q in [*self._kratos_queries, self.hydra_query]:
            self._tasks.append(asyncio.create_task(self._refresh_loop(q)))
        log.info("Analytics background refresh started (%d tasks)", len(self._tasks))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------- combined view -------------------
    def snapshot(self) -> CombinedAnalytics:
        kratos_health = self._kratos_health
        hydra_health = self._hydra_health
        kratos_healthy = bool(kratos_health and kratos_health.is_healthy)
        hydra_healthy = bool(hydra_health and hydra_health.is_healthy)

        results = {q.name: q.result() for q in [*self._kratos_queries, self.hydra_query]}
        mandatory = [results["identity"], results["session"], results["system"]]

        is_loading = (
            not self.settings_loaded
            or kratos_health is None
            or (self.hydra_enabled and hydra_health is None)
            or (kratos_healthy and any(r.is_loading for r in mandatory))
            or (hydra_healthy and results["hydra"].is_loading)
        )

        kratos_down = kratos_health is not None and not kratos_health.is_healthy
        error: Optional[str] = None
        if kratos_down:
            error = kratos_health.error or "Kratos is unavailable"
        else:
            error = next((r.error for r in mandatory if r.is_error), None)

        return CombinedAnalytics(
            identity=results["identity"],
            session=results["session"],
            system=results["system"],
            hydra=results["hydra"],
            kratos_health=kratos_health,
            hydra_health=hydra_health,
            is_loading=is_loading,
            is_error=kratos_down or any(r.is_error for r in mandatory),
            error=error,
            hydra_enabled=self.hydra_enabled,
            is_hydra_available=self.hydra_enabled and hydra_healthy,
        )
