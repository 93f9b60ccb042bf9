"""
Layout store.

A single-writer, subscribable container for one principal's dashboard layout.
Mutations apply synchronously to the in-memory layout, notify listeners and
hand the new wire payload to a debounced writer; persistence is best-effort
write-behind (a crash inside the quiet period loses the last change).
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Set, Union

from athena.core.logging import get_logger
from athena.dashboard.layout import build_default_layout, next_row, normalize_item, parse_layout
from athena.dashboard.repository import LayoutRepository
from athena.dashboard.widgets import WIDGET_DEFINITIONS, get_definition
from athena.models import DashboardLayout, WidgetDefinition, WidgetId, WidgetLayoutItem
from athena.settings import get_settings

log = get_logger("athena.layout")

Listener = Callable[[DashboardLayout], None]
ItemLike = Union[WidgetLayoutItem, Dict[str, Any]]


class StoreState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"


class LayoutNotReadyError(RuntimeError):
    """A mutation was attempted before `initialize()` completed."""


class LayoutChannel(Protocol):
    async def load(self) -> Optional[Dict[str, Any]]:
        ...

    async def save(self, layout: Dict[str, Any]) -> None:
        ...


class RepositoryLayoutChannel:
    """Server-side channel: one principal's slot in a LayoutRepository."""

    def __init__(self, repository: LayoutRepository, principal: str) -> None:
        self.repository = repository
        self.principal = principal

    async def load(self) -> Optional[Dict[str, Any]]:
        return await self.repository.load(self.principal)

    async def save(self, layout: Dict[str, Any]) -> None:
        await self.repository.save(self.principal, layout)


# ------------------- debounced persistence -------------------

class DebouncedWriter:
    """
    Write-behind queue with a quiet period.

    Every `schedule()` replaces the pending payload and restarts the single
    timer, so a burst of mutations produces one write with the latest state.
    Writes are serialized; failures are logged and dropped.
    """

    def __init__(self, save: Callable[[Dict[str, Any]], Awaitable[None]], delay: float, *, name: str = "layout") -> None:
        self._save = save
        self.delay = max(0.0, delay)
        self.name = name
        self._pending: Optional[Dict[str, Any]] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._inflight: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self.writes = 0

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    @property
    def is_saving(self) -> bool:
        return bool(self._inflight)

    def schedule(self, payload: Dict[str, Any]) -> None:
        self._pending = payload
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: the payload waits for flush()
            return
        self._handle = loop.call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = None

    def _fire(self) -> None:
        self._handle = None
        payload, self._pending = self._pending, None
        if payload is None:
            return
        task = asyncio.ensure_future(self._write(payload))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _write(self, payload: Dict[str, Any]) -> None:
        async with self._lock:
            try:
                await self._save(payload)
                self.writes += 1
            except Exception:
                log.exception("Failed to persist %s", self.name)

    async def flush(self) -> None:
        """Write the pending payload now and wait for in-flight writes."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        payload, self._pending = self._pending, None
        if payload is not None:
            await self._write(payload)


# ------------------- store -------------------

class LayoutStore:
    def __init__(
        self,
        channel: LayoutChannel,
        *,
        debounce_sec: Optional[float] = None,
        definitions: Sequence[WidgetDefinition] = WIDGET_DEFINITIONS,
    ) -> None:
        if debounce_sec is None:
            debounce_sec = get_settings().LAYOUT_DEBOUNCE_SEC
        self._channel = channel
        self._definitions = definitions
        self._layout: DashboardLayout = build_default_layout(definitions)
        self._listeners: List[Listener] = []
        self._init_task: Optional[asyncio.Task] = None
        self.state = StoreState.UNINITIALIZED
        self.writer = DebouncedWriter(channel.save, debounce_sec, name="dashboard layout")

    # ---- read side ----
    @property
    def is_ready(self) -> bool:
        return self.state is StoreState.READY

    @property
    def is_saving(self) -> bool:
        return self.writer.is_saving

    def snapshot(self) -> DashboardLayout:
        return self._layout.model_copy(deep=True)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.snapshot())
            except Exception:
                log.exception("Layout listener failed")

    def _commit(self, layout: DashboardLayout, *, persist: bool = True) -> DashboardLayout:
        self._layout = layout
        self._notify()
        if persist:
            self.writer.schedule(layout.to_wire())
        return self.snapshot()

    def _require_ready(self) -> None:
        if self.state is not StoreState.READY:
            raise LayoutNotReadyError("dashboard layout is not initialized")

    # ---- lifecycle ----
    async def initialize(self) -> None:
        """Load the persisted layout, or build and persist the default one."""
        if self.state is StoreState.READY:
            return
        if self._init_task is None:
            self.state = StoreState.LOADING
            self._init_task = asyncio.ensure_future(self._load())
        await asyncio.shield(self._init_task)

    async def _load(self) -> None:
        raw: Optional[Dict[str, Any]] = None
        try:
            raw = await self._channel.load()
        except Exception:
            log.exception("Failed to load dashboard layout")

        layout = parse_layout(raw) if raw is not None else None
        self.state = StoreState.READY
        if layout is not None:
            self._commit(layout, persist=False)
            return
        if raw is not None:
            log.info("Stored dashboard layout is incompatible (version=%s); rebuilding.", raw.get("version") if isinstance(raw, dict) else None)
        self._commit(build_default_layout(self._definitions))

    # ---- mutations ----
    def update_layout(self, items: Iterable[ItemLike]) -> DashboardLayout:
        """Replace the placed widgets; ids currently hidden are dropped, duplicates keep the first."""
        self._require_ready()
        hidden = set(self._layout.hidden_widgets)
        seen: Set[WidgetId] = set()
        widgets: List[WidgetLayoutItem] = []
        for raw in items:
            item = raw if isinstance(raw, WidgetLayoutItem) else WidgetLayoutItem.model_validate(raw)
            if item.i in hidden or item.i in seen:
                continue
            seen.add(item.i)
            widgets.append(normalize_item(item))
        return self._commit(self._layout.model_copy(update={"widgets": widgets}))

    def remove_widget(self, widget_id: Union[WidgetId, str]) -> DashboardLayout:
        self._require_ready()
        wid = WidgetId(widget_id)
        hidden = list(self._layout.hidden_widgets)
        if wid not in hidden:
            hidden.append(wid)
        widgets = [w for w in self._layout.widgets if w.i != wid]
        return self._commit(self._layout.model_copy(update={"widgets": widgets, "hidden_widgets": hidden}))

    def add_widget(self, widget_id: Union[WidgetId, str]) -> DashboardLayout:
        """Place a widget at the bottom of the grid; unknown ids are ignored."""
        self._require_ready()
        definition = get_definition(widget_id)
        if definition is None:
            return self.snapshot()

        hidden = [h for h in self._layout.hidden_widgets if h != definition.id]
        widgets = list(self._layout.widgets)
        if definition.id not in self._layout.placed_ids():
            widgets.append(
                WidgetLayoutItem(
                    i=definition.id,
                    x=0,
                    y=next_row(widgets),
                    w=definition.default_w,
                    h=definition.default_h,
                    min_w=definition.min_w,
                    min_h=definition.min_h,
                    max_w=definition.max_w,
                    max_h=definition.max_h,
                )
            )
        return self._commit(self._layout.model_copy(update={"widgets": widgets, "hidden_widgets": hidden}))

    def _replace_item(self, widget_id: Union[WidgetId, str], **changes: int) -> DashboardLayout:
        self._require_ready()
        wid = WidgetId(widget_id)
        if wid not in self._layout.placed_ids():
            return self.snapshot()
        widgets = [
            normalize_item(w.model_copy(update=changes)) if w.i == wid else w
            for w in self._layout.widgets
        ]
        return self._commit(self._layout.model_copy(update={"widgets": widgets}))

    def resize_widget(self, widget_id: Union[WidgetId, str], w: int, h: int) -> DashboardLayout:
        return self._replace_item(widget_id, w=w, h=h)

    def move_widget(self, widget_id: Union[WidgetId, str], x: int, y: int) -> DashboardLayout:
        return self._replace_item(widget_id, x=x, y=y)

    def reset_to_default(self) -> DashboardLayout:
        self._require_ready()
        return self._commit(build_default_layout(self._definitions))

    async def flush(self) -> None:
        await self.writer.flush()


# ------------------- registry -------------------

class LayoutStoreRegistry:
    """One initialized LayoutStore per principal, all persisting to the same repository."""

    def __init__(
        self,
        repository: LayoutRepository,
        *,
        debounce_sec: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.debounce_sec = debounce_sec
        self._clock = clock
        self._stores: Dict[str, LayoutStore] = {}
        self._last_used: Dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._stores)

    def __contains__(self, principal: str) -> bool:
        return principal in self._stores

    async def get(self, principal: str) -> LayoutStore:
        store = self._stores.get(principal)
        if store is None:
            store = LayoutStore(
                RepositoryLayoutChannel(self.repository, principal),
                debounce_sec=self.debounce_sec,
            )
            self._stores[principal] = store
        self._last_used[principal] = self._clock()
        await store.initialize()
        return store

    def discard(self, principal: str) -> None:
        """Forget a principal's store (its remote copy was replaced out of band)."""
        store = self._stores.pop(principal, None)
        self._last_used.pop(principal, None)
        if store is not None:
            store.writer.cancel()

    async def evict_idle(self, idle_sec: float) -> int:
        """Write out and forget stores nobody has touched for `idle_sec`."""
        cutoff = self._clock() - idle_sec
        evicted = 0
        for principal in [p for p, used in self._last_used.items() if used <= cutoff]:
            # touched again or discarded while an earlier store was flushing
            if self._last_used.get(principal, cutoff + 1) > cutoff:
                continue
            store = self._stores.pop(principal)
            del self._last_used[principal]
            await store.flush()
            evicted += 1
        if evicted:
            log.debug("Evicted %d idle dashboard layout store(s)", evicted)
        return evicted

    async def flush_all(self) -> None:
        stores = list(self._stores.values())
        if stores:
            await asyncio.gather(*(s.flush() for s in stores), return_exceptions=True)
            log.info("Flushed %d dashboard layout store(s)", len(stores))
