from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from athena.analytics.types import HealthStatus
from athena.core.logging import get_logger

log = get_logger("athena.health")

Probe = Callable[[], Awaitable[bool]]
Clock = Callable[[], datetime]


class Service(str, Enum):
    KRATOS = "kratos"
    HYDRA = "hydra"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthGate:
    """
    Per-service availability check that gates analytics fetches.

    - a disabled optional service is reported unhealthy with `disabled=True`
      (a degraded mode, not an error)
    - managed cloud (Ory Network) exposes no probe endpoint and is assumed up
    - otherwise a liveness probe runs; a probe that raises is retried up to
      `retries` times with exponential backoff, a probe that answers False is
      not. Healthy answers are cached for `cache_for`, failures are not
    """

    def __init__(
        self,
        probes: Dict[Service, Probe],
        *,
        retries: int = 1,
        backoff: float = 0.5,
        cache_for: timedelta = timedelta(minutes=2),
        clock: Clock = utcnow,
    ) -> None:
        self._probes = dict(probes)
        self.retries = max(0, retries)
        self.backoff = max(0.0, backoff)
        self.cache_for = cache_for
        self._clock = clock
        self._healthy_until: Dict[Service, datetime] = {}
        self._last: Dict[Service, HealthStatus] = {}

    def last_status(self, service: Service) -> Optional[HealthStatus]:
        return self._last.get(service)

    def invalidate(self, service: Optional[Service] = None) -> None:
        if service is None:
            self._healthy_until.clear()
        else:
            self._healthy_until.pop(service, None)

    async def check_health(
        self,
        service: Service,
        is_managed_cloud: bool,
        *,
        enabled: bool = True,
    ) -> HealthStatus:
        now = self._clock()
        if not enabled:
            status = HealthStatus(is_healthy=False, disabled=True, checked_at=now)
        elif is_managed_cloud:
            status = HealthStatus(is_healthy=True, checked_at=now)
        elif self._healthy_until.get(service, now) > now:
            status = self._last[service]
        else:
            status = await self._probe(service)
            if status.is_healthy:
                self._healthy_until[service] = self._clock() + self.cache_for
        self._last[service] = status
        return status

    async def _probe(self, service: Service) -> HealthStatus:
        probe = self._probes.get(service)
        if probe is None:
            return HealthStatus(is_healthy=False, error=f"No health probe for {service.value}", checked_at=self._clock())

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retries + 1),
                wait=wait_exponential(multiplier=self.backoff, max=2),
                retry=retry_if_exception_type(Exception),
                before_sleep=before_sleep_log(log, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    alive = await probe()
        except Exception as exc:
            log.warning("Health probe for %s failed after %d attempt(s): %s", service.value, self.retries + 1, exc)
            return HealthStatus(is_healthy=False, error=f"{service.value} health check failed: {exc}", checked_at=self._clock())

        if not alive:
            return HealthStatus(is_healthy=False, error=f"{service.value} is not responding", checked_at=self._clock())
        return HealthStatus(is_healthy=True, checked_at=self._clock())
