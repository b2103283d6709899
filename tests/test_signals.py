"""
Event and Connectivity Tests

Tests for UI change notifications and regained-signal callbacks.
"""

import pytest

from slimcal_sync.connectivity import ConnectivityMonitor, Signal
from slimcal_sync.events import EventDomain, EventEmitter, SyncEvent
from slimcal_sync.models import DailyAggregate


class TestEventEmitter:
    """Tests for EventEmitter."""

    def test_domain_filter(self):
        emitter = EventEmitter()
        burned, everything = [], []
        emitter.subscribe(burned.append, EventDomain.BURNED)
        emitter.subscribe(everything.append)

        emitter.emit_totals("2024-01-02", DailyAggregate(consumed=10.4, burned=5.6))

        assert [e.domain for e in everything] == [EventDomain.CONSUMED, EventDomain.BURNED]
        assert len(burned) == 1
        assert (burned[0].consumed, burned[0].burned) == (10, 6)

    def test_failing_listener_does_not_block_others(self):
        emitter = EventEmitter()
        seen = []

        def broken(event):
            raise RuntimeError("ui went away")

        emitter.subscribe(broken)
        emitter.subscribe(seen.append)
        emitter.emit(SyncEvent(domain=EventDomain.MEAL_HISTORY, day="2024-01-02"))

        assert len(seen) == 1

    def test_unsubscribe(self):
        emitter = EventEmitter()
        seen = []
        unsubscribe = emitter.subscribe(seen.append)
        unsubscribe()
        emitter.emit_totals("2024-01-02", DailyAggregate())
        assert seen == []


class TestConnectivityMonitor:
    """Tests for ConnectivityMonitor."""

    @pytest.mark.asyncio
    async def test_online_fires_only_on_regained_edge(self):
        monitor = ConnectivityMonitor(online=True)
        fired = []

        async def on_online():
            fired.append("online")

        monitor.add_listener(Signal.ONLINE, on_online)
        await monitor.set_online(True)
        assert fired == []

        await monitor.set_online(False)
        assert monitor.is_online is False
        await monitor.set_online(True)
        assert fired == ["online"]

    @pytest.mark.asyncio
    async def test_visibility_and_focus(self):
        monitor = ConnectivityMonitor(visible=False)
        fired = []

        async def on_visible():
            fired.append("visible")

        async def on_focus():
            fired.append("focus")

        monitor.add_listener(Signal.VISIBLE, on_visible)
        remove = monitor.add_listener(Signal.FOCUS, on_focus)
        await monitor.set_visible(True)
        await monitor.notify_focus()
        remove()
        await monitor.notify_focus()

        assert fired == ["visible", "focus"]

    @pytest.mark.asyncio
    async def test_listener_errors_logged_not_raised(self):
        monitor = ConnectivityMonitor(online=False)

        async def broken():
            raise RuntimeError("boom")

        monitor.add_listener(Signal.ONLINE, broken)
        await monitor.set_online(True)
        assert monitor.is_online is True
