"""
Tests for the layout store, its debounced writer and the per-principal registry.
"""

import asyncio

import pytest

from athena.dashboard.layout import build_default_layout
from athena.dashboard.store import (
    DebouncedWriter,
    LayoutNotReadyError,
    LayoutStore,
    LayoutStoreRegistry,
    StoreState,
)
from athena.dashboard.widgets import LAYOUT_VERSION
from athena.models import WidgetId


DEBOUNCE = 0.03


def stored_default():
    return build_default_layout().to_wire()


async def ready_store(channel, debounce=DEBOUNCE) -> LayoutStore:
    store = LayoutStore(channel, debounce_sec=debounce)
    await store.initialize()
    return store


async def settle(delay=DEBOUNCE * 5):
    await asyncio.sleep(delay)


# ============================================================================
# INITIALIZATION
# ============================================================================


class TestInitialize:

    @pytest.mark.asyncio
    async def test_missing_layout_builds_and_persists_default(self, channel):
        store = await ready_store(channel)
        await store.flush()

        assert store.state is StoreState.READY
        assert len(channel.saves) == 1
        assert channel.saves[0] == build_default_layout().to_wire()

    @pytest.mark.asyncio
    async def test_old_version_is_rebuilt_and_persisted(self, make_channel):
        channel = make_channel({"version": 16, "widgets": [], "hiddenWidgets": ["stat-total-users"]})

        store = await ready_store(channel)
        await store.flush()

        assert store.snapshot().version == LAYOUT_VERSION
        assert store.snapshot().hidden_widgets == []
        assert channel.saves[-1]["version"] == LAYOUT_VERSION

    @pytest.mark.asyncio
    async def test_current_layout_is_used_without_writing(self, make_channel):
        wire = stored_default()
        wire["widgets"] = wire["widgets"][:2]
        channel = make_channel(wire)

        store = await ready_store(channel)
        await store.flush()

        assert len(store.snapshot().widgets) == 2
        assert channel.saves == []

    @pytest.mark.asyncio
    async def test_hidden_wins_when_loading(self, make_channel):
        wire = stored_default()
        wire["hiddenWidgets"] = ["chart-peak-hours"]
        channel = make_channel(wire)

        store = await ready_store(channel)
        layout = store.snapshot()

        assert WidgetId.CHART_PEAK_HOURS not in layout.placed_ids()
        assert layout.hidden_widgets == [WidgetId.CHART_PEAK_HOURS]

    @pytest.mark.asyncio
    async def test_load_failure_falls_back_to_default(self, make_channel):
        channel = make_channel(fail_load=True)

        store = await ready_store(channel)

        assert store.is_ready
        assert store.snapshot().to_wire() == stored_default()

    @pytest.mark.asyncio
    async def test_concurrent_initialize_loads_once(self, channel):
        store = LayoutStore(channel, debounce_sec=DEBOUNCE)

        await asyncio.gather(store.initialize(), store.initialize(), store.initialize())
        await store.initialize()

        assert channel.loads == 1

    def test_mutations_before_ready_raise(self, channel):
        store = LayoutStore(channel, debounce_sec=DEBOUNCE)

        with pytest.raises(LayoutNotReadyError):
            store.remove_widget(WidgetId.STAT_TOTAL_USERS)
        with pytest.raises(LayoutNotReadyError):
            store.reset_to_default()


# ============================================================================
# MUTATIONS
# ============================================================================


class TestMutations:

    @pytest.mark.asyncio
    async def test_remove_then_add_places_widget_at_the_bottom(self, make_channel):
        store = await ready_store(make_channel(stored_default()))

        removed = store.remove_widget("chart-peak-hours")
        assert WidgetId.CHART_PEAK_HOURS in removed.hidden_widgets
        assert WidgetId.CHART_PEAK_HOURS not in removed.placed_ids()

        bottom = max(w.y + w.h for w in removed.widgets)
        added = store.add_widget("chart-peak-hours")
        item = next(w for w in added.widgets if w.i is WidgetId.CHART_PEAK_HOURS)

        assert (item.x, item.y, item.w, item.h) == (0, bottom, 6, 6)
        assert (item.min_w, item.min_h) == (3, 3)
        assert added.hidden_widgets == []

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, make_channel):
        store = await ready_store(make_channel(stored_default()))

        store.remove_widget(WidgetId.STAT_TOTAL_USERS)
        layout = store.remove_widget(WidgetId.STAT_TOTAL_USERS)

        assert layout.hidden_widgets == [WidgetId.STAT_TOTAL_USERS]

    @pytest.mark.asyncio
    async def test_add_unknown_widget_is_a_no_op(self, make_channel):
        channel = make_channel(stored_default())
        store = await ready_store(channel)
        before = store.snapshot()

        after = store.add_widget("not-a-widget")
        await store.flush()

        assert after.to_wire() == before.to_wire()
        assert channel.saves == []

    @pytest.mark.asyncio
    async def test_add_placed_widget_keeps_single_copy(self, make_channel):
        store = await ready_store(make_channel(stored_default()))

        layout = store.add_widget(WidgetId.STAT_TOTAL_USERS)

        assert layout.placed_ids().count(WidgetId.STAT_TOTAL_USERS) == 1

    @pytest.mark.asyncio
    async def test_update_layout_drops_hidden_and_duplicate_ids(self, make_channel):
        store = await ready_store(make_channel(stored_default()))
        store.remove_widget(WidgetId.STAT_AVG_SESSION)

        layout = store.update_layout([
            {"i": "stat-total-users", "x": 4, "y": 0, "w": 2, "h": 2},
            {"i": "stat-total-users", "x": 8, "y": 8, "w": 2, "h": 2},
            {"i": "stat-avg-session", "x": 0, "y": 0, "w": 2, "h": 2},
            {"i": "chart-session-locations", "x": 10, "y": 4, "w": 1, "h": 1},
        ])

        assert layout.placed_ids() == [WidgetId.STAT_TOTAL_USERS, WidgetId.CHART_SESSION_LOCATIONS]
        assert (layout.widgets[0].x, layout.widgets[0].y) == (4, 0)
        locations = layout.widgets[1]
        assert (locations.x, locations.w, locations.h) == (8, 4, 4)
        assert layout.hidden_widgets == [WidgetId.STAT_AVG_SESSION]

    @pytest.mark.asyncio
    async def test_resize_and_move_are_clamped(self, make_channel):
        store = await ready_store(make_channel(stored_default()))

        resized = store.resize_widget("chart-peak-hours", 1, 1)
        peak = next(w for w in resized.widgets if w.i is WidgetId.CHART_PEAK_HOURS)
        assert (peak.w, peak.h) == (3, 3)

        moved = store.move_widget("stat-total-users", 20, 5)
        total = next(w for w in moved.widgets if w.i is WidgetId.STAT_TOTAL_USERS)
        assert (total.x, total.y) == (10, 5)

    @pytest.mark.asyncio
    async def test_resize_hidden_widget_is_ignored(self, make_channel):
        store = await ready_store(make_channel(stored_default()))
        store.remove_widget("chart-peak-hours")

        layout = store.resize_widget("chart-peak-hours", 6, 6)

        assert WidgetId.CHART_PEAK_HOURS not in layout.placed_ids()

    @pytest.mark.asyncio
    async def test_remove_unknown_widget_raises(self, make_channel):
        store = await ready_store(make_channel(stored_default()))

        with pytest.raises(ValueError):
            store.remove_widget("not-a-widget")

    @pytest.mark.asyncio
    async def test_reset_to_default(self, make_channel):
        store = await ready_store(make_channel(stored_default()))
        store.remove_widget(WidgetId.STAT_TOTAL_USERS)
        store.move_widget(WidgetId.CHART_PEAK_HOURS, 0, 40)

        layout = store.reset_to_default()

        assert layout.to_wire() == stored_default()

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self, make_channel):
        store = await ready_store(make_channel(stored_default()))

        snap = store.snapshot()
        snap.widgets.clear()

        assert len(store.snapshot().widgets) == len(stored_default()["widgets"])


# ============================================================================
# LISTENERS
# ============================================================================


class TestListeners:

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, make_channel):
        store = await ready_store(make_channel(stored_default()))
        seen = []

        unsubscribe = store.subscribe(seen.append)
        store.remove_widget(WidgetId.STAT_TOTAL_USERS)
        unsubscribe()
        store.add_widget(WidgetId.STAT_TOTAL_USERS)

        assert len(seen) == 1
        assert seen[0].hidden_widgets == [WidgetId.STAT_TOTAL_USERS]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, make_channel):
        store = await ready_store(make_channel(stored_default()))
        seen = []

        def broken(layout):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        store.subscribe(seen.append)
        store.remove_widget(WidgetId.STAT_TOTAL_USERS)

        assert len(seen) == 1


# ============================================================================
# DEBOUNCED PERSISTENCE
# ============================================================================


class TestDebouncedPersistence:

    @pytest.mark.asyncio
    async def test_burst_of_mutations_is_written_once(self, make_channel):
        channel = make_channel(stored_default())
        store = await ready_store(channel)

        store.move_widget(WidgetId.STAT_TOTAL_USERS, 0, 10)
        store.move_widget(WidgetId.STAT_TOTAL_USERS, 0, 11)
        store.move_widget(WidgetId.STAT_TOTAL_USERS, 0, 12)
        assert channel.saves == []

        await settle()

        assert len(channel.saves) == 1
        saved = next(w for w in channel.saves[0]["widgets"] if w["i"] == "stat-total-users")
        assert saved["y"] == 12

    @pytest.mark.asyncio
    async def test_separate_bursts_write_separately(self, make_channel):
        channel = make_channel(stored_default())
        store = await ready_store(channel)

        store.remove_widget(WidgetId.STAT_TOTAL_USERS)
        await settle()
        store.add_widget(WidgetId.STAT_TOTAL_USERS)
        await settle()

        assert len(channel.saves) == 2
        assert channel.saves[0]["hiddenWidgets"] == ["stat-total-users"]
        assert channel.saves[1]["hiddenWidgets"] == []

    @pytest.mark.asyncio
    async def test_flush_writes_pending_immediately(self, make_channel):
        channel = make_channel(stored_default())
        store = await ready_store(channel, debounce=10)

        store.remove_widget(WidgetId.STAT_TOTAL_USERS)
        assert store.writer.has_pending
        await store.flush()

        assert len(channel.saves) == 1
        assert not store.writer.has_pending

    @pytest.mark.asyncio
    async def test_save_failures_are_swallowed(self, make_channel):
        channel = make_channel(stored_default(), fail_save=True)
        store = await ready_store(channel)

        store.remove_widget(WidgetId.STAT_TOTAL_USERS)
        await store.flush()

        assert store.writer.writes == 0
        assert store.snapshot().hidden_widgets == [WidgetId.STAT_TOTAL_USERS]

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_payload(self):
        saves = []

        async def save(payload):
            saves.append(payload)

        writer = DebouncedWriter(save, DEBOUNCE)
        writer.schedule({"version": 1})
        writer.cancel()
        await settle()

        assert saves == []
        assert not writer.has_pending


# ============================================================================
# REGISTRY
# ============================================================================


class TestLayoutStoreRegistry:

    @pytest.mark.asyncio
    async def test_one_store_per_principal(self, memory_repository):
        registry = LayoutStoreRegistry(memory_repository, debounce_sec=DEBOUNCE)

        alice = await registry.get("alice")
        again = await registry.get("alice")
        bob = await registry.get("bob")

        assert alice is again
        assert alice is not bob
        assert len(registry) == 2
        assert "alice" in registry

    @pytest.mark.asyncio
    async def test_flush_all_persists_every_principal(self, memory_repository):
        registry = LayoutStoreRegistry(memory_repository, debounce_sec=10)

        await registry.get("alice")
        await registry.get("bob")
        await registry.flush_all()

        assert {principal for principal, _ in memory_repository.saves} == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_discard_drops_store_and_pending_write(self, memory_repository):
        registry = LayoutStoreRegistry(memory_repository, debounce_sec=DEBOUNCE)

        await registry.get("alice")
        registry.discard("alice")
        await settle()

        assert "alice" not in registry
        assert memory_repository.saves == []

    @pytest.mark.asyncio
    async def test_idle_stores_are_flushed_and_evicted(self, memory_repository):
        ticks = [100.0]
        registry = LayoutStoreRegistry(memory_repository, debounce_sec=10, clock=lambda: ticks[0])

        await registry.get("alice")
        await registry.get("bob")
        ticks[0] += 600
        await registry.get("bob")

        evicted = await registry.evict_idle(300)

        assert evicted == 1
        assert "alice" not in registry
        assert "bob" in registry
        assert [principal for principal, _ in memory_repository.saves] == ["alice"]

    @pytest.mark.asyncio
    async def test_evicted_store_reloads_on_next_use(self, memory_repository):
        ticks = [0.0]
        registry = LayoutStoreRegistry(memory_repository, debounce_sec=10, clock=lambda: ticks[0])

        first = await registry.get("alice")
        first.remove_widget(WidgetId.STAT_TOTAL_USERS)
        ticks[0] += 1000
        await registry.evict_idle(300)

        second = await registry.get("alice")

        assert second is not first
        assert second.snapshot().hidden_widgets == [WidgetId.STAT_TOTAL_USERS]
