"""
Sync Engine Tests

End-to-end tests of the engine facade against the in-memory remote.
"""

import pytest

from slimcal_sync.connectivity import ConnectivityMonitor
from slimcal_sync.engine import SyncEngine, sync_engine
from slimcal_sync.events import EventDomain
from slimcal_sync.models import DailyAggregate, Keys, local_day_iso


@pytest.fixture
def offline():
    return ConnectivityMonitor(online=False)


@pytest.fixture
def engine(storage, remote, settings, offline, events, clock, sleep):
    return SyncEngine(
        storage,
        remote,
        settings=settings,
        connectivity=offline,
        events=events,
        clock=clock,
        monotonic=clock,
        sleep=sleep,
    )


class TestOfflineRoundTrip:
    """Offline writes reconcile once connectivity returns."""

    @pytest.mark.asyncio
    async def test_offline_meal_reconciles_on_reconnect(self, engine, offline, remote, events, user):
        consumed = []
        events.subscribe(consumed.append, EventDomain.CONSUMED)
        today = local_day_iso()

        await engine.start(user)
        result = await engine.save_meal_local_first({"name": "Pasta", "calories": 450})

        assert result.local_only is True
        assert len(engine.queue) == 1
        assert consumed[-1].consumed == 450
        assert remote.meals == {}

        await offline.set_online(True)

        assert len(engine.queue) == 0
        assert len(remote.meals) == 1
        assert remote.daily_metrics[(user.id, today)]["calories_eaten"] == 450
        assert engine.cache.get_day_totals(user.id, today).consumed == 450
        await engine.stop()

    @pytest.mark.asyncio
    async def test_two_flushes_leave_one_remote_row(self, engine, offline, remote, user):
        engine.set_user(user)
        await engine.save_workout_local_first({"totalCalories": 300})

        await offline.set_online(True)
        await engine.flush_pending()
        await engine.flush_pending()

        assert len(remote.workouts) == 1


class TestBootstrap:
    """Sign-in bootstrap through the engine."""

    @pytest.mark.asyncio
    async def test_bootstrap_migrates_then_hydrates(self, storage, remote, settings, clock, sleep, user):
        today = local_day_iso()
        storage.set("mealHistory", f'[{{"date": "{today}", "meals": [{{"name": "Oats", "calories": 250}}]}}]')

        async with sync_engine(storage, remote, user, settings=settings, clock=clock,
                               monotonic=clock, sleep=sleep) as engine:
            assert engine.migrator.is_migrated()
            assert len(remote.meals) == 1
            assert engine.cache.get_day_totals(user.id, today).consumed == 250
            assert storage.get("mealHistory") is None

    @pytest.mark.asyncio
    async def test_cloud_totals_win_for_today(self, storage, remote, settings, clock, sleep, user):
        today = local_day_iso()
        engine = SyncEngine(storage, remote, settings=settings, clock=clock, monotonic=clock, sleep=sleep)
        storage.set(Keys.LOCAL_MIGRATED, "1")
        engine.cache.set_day_totals(user.id, today, DailyAggregate(consumed=900))
        await remote.upsert_daily_metric(DailyAggregate(consumed=1200, burned=300).to_remote(user.id, today))

        await engine.start(user)

        totals = engine.cache.get_day_totals(user.id, today)
        assert (totals.consumed, totals.burned) == (1200, 300)
        await engine.stop()


def test_status(engine, user):
    engine.set_user(user)
    status = engine.get_sync_status()

    assert status["client_id"] == engine.client_id
    assert status["user_id"] == user.id
    assert status["online"] is False
    assert status["migrated"] is False
    assert status["queue_stats"]["pending"] == 0
    assert "rate_limit_remaining" not in status


def test_settings_flow_into_components(storage, remote, settings):
    settings.max_retry_count = 3
    settings.flush_retry_delay = 0.5
    engine = SyncEngine(storage, remote, settings=settings)

    assert engine.queue.max_retry_count == 3
    assert engine.queue.device_id == engine.client_id
    assert engine.flusher.retry_delay == 0.5
