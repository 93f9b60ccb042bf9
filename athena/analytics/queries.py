from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Generic, Optional, Type, TypeVar

from athena.analytics.health import Clock, utcnow
from athena.analytics.types import QueryResult
from athena.core.logging import get_logger

log = get_logger("athena.analytics")

T = TypeVar("T")


class DomainQuery(Generic[T]):
    """
    Cached result slot for one analytics domain.

    Holds the last successful snapshot, the last error, and when it was
    fetched. Non-forced fetches are skipped while the snapshot is fresh and
    join an in-flight fetch; forced fetches always start a new request without
    cancelling the old one, so whichever request resolves last owns the slot.
    """

    def __init__(
        self,
        name: str,
        fetcher: Callable[[], Awaitable[T]],
        snapshot_type: Type[T],
        *,
        stale_after: timedelta,
        refetch_interval: timedelta,
        clock: Clock = utcnow,
    ) -> None:
        self.name = name
        self.stale_after = stale_after
        self.refetch_interval = refetch_interval
        self.enabled = False
        self._fetcher = fetcher
        self._result_type = QueryResult[snapshot_type]  # type: ignore[valid-type]
        self._clock = clock
        self._data: Optional[T] = None
        self._error: Optional[str] = None
        self._updated_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def data(self) -> Optional[T]:
        return self._data

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_fetching(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_loading(self) -> bool:
        # no data to show yet and either fetching or about to
        if self._data is not None or self._error is not None:
            return False
        return self.is_fetching or (self.enabled and self._updated_at is None)

    def is_stale(self) -> bool:
        if self._updated_at is None or self._error is not None:
            return True
        return self._clock() - self._updated_at >= self.stale_after

    async def _run(self) -> None:
        try:
            data = await self._fetcher()
        except Exception as exc:
            log.warning("Analytics fetch failed for %s: %s", self.name, exc)
            self._error = str(exc) or exc.__class__.__name__
            return
        self._data = data
        self._error = None
        self._updated_at = self._clock()

    async def fetch(self, *, force: bool = False) -> None:
        if not force:
            if self.is_fetching:
                await asyncio.shield(self._task)
                return
            if not self.is_stale():
                return
        task = asyncio.ensure_future(self._run())
        self._task = task
        await asyncio.shield(task)

    def result(self) -> QueryResult:
        return self._result_type(
            data=self._data,
            is_loading=self.is_loading,
            is_error=self._error is not None,
            error=self._error,
            updated_at=self._updated_at,
        )
