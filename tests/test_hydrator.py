"""
Cloud Hydrator Tests

Tests for pulling remote state into the local cache.
"""

from datetime import date, timedelta
from unittest.mock import AsyncMock

import pytest

from slimcal_sync.cache import LocalCache
from slimcal_sync.connectivity import ConnectivityMonitor
from slimcal_sync.events import EventDomain
from slimcal_sync.hydrator import CloudHydrator, merge_calorie_history
from slimcal_sync.models import DailyAggregate, local_day_iso
from slimcal_sync.remote import NetworkError


@pytest.fixture
def cache(storage):
    return LocalCache(storage)


@pytest.fixture
def hydrator(cache, remote, events, connectivity):
    return CloudHydrator(cache, remote, events, connectivity)


def days_ago(n: int) -> str:
    return (date.today() - timedelta(days=n)).isoformat()


class TestMergeCalorieHistory:
    """Tests for merge_calorie_history."""

    def test_local_wins(self):
        local = {"2024-01-02": {"eaten": 100}}
        cloud = {"2024-01-02": {"eaten": 500}, "2024-01-03": {"eaten": 300}}

        merged = merge_calorie_history(local, cloud)

        assert merged["2024-01-02"]["eaten"] == 100
        assert merged["2024-01-03"]["eaten"] == 300

    def test_sorted_by_day(self):
        merged = merge_calorie_history({"2024-01-05": {}}, {"2024-01-01": {}})
        assert list(merged) == ["2024-01-01", "2024-01-05"]


class TestHydrateToday:
    """Tests for hydrate_today_totals_from_cloud."""

    @pytest.mark.asyncio
    async def test_missing_row_zeroes_snapshot(self, hydrator, cache, recorded_events, user):
        today = local_day_iso()
        cache.set_day_totals(user.id, today, DailyAggregate(consumed=800, burned=100))

        result = await hydrator.hydrate_today_totals_from_cloud(user)

        assert result.ok is True
        totals = cache.get_day_totals(user.id, today)
        assert (totals.consumed, totals.burned) == (0, 0)
        assert {e.domain for e in recorded_events} == {EventDomain.CONSUMED, EventDomain.BURNED}
        assert all(e.consumed == 0 and e.burned == 0 for e in recorded_events)

    @pytest.mark.asyncio
    async def test_remote_row_wins(self, hydrator, cache, remote, user):
        today = local_day_iso()
        cache.set_day_totals(user.id, today, DailyAggregate(consumed=900))
        await remote.upsert_daily_metric(DailyAggregate(consumed=500, burned=50).to_remote(user.id, today))

        result = await hydrator.hydrate_today_totals_from_cloud(user)

        assert result.totals.consumed == 500
        assert cache.get_day_totals(user.id, today).consumed == 500
        assert cache.get_day_totals(user.id, today).net == 450

    @pytest.mark.asyncio
    async def test_legacy_columns_understood(self, hydrator, cache, remote, user):
        today = local_day_iso()
        remote.daily_metrics[(user.id, today)] = {"user_id": user.id, "local_day": today, "cals_eaten": 700}

        await hydrator.hydrate_today_totals_from_cloud(user)

        assert cache.get_day_totals(user.id, today).consumed == 700

    @pytest.mark.asyncio
    async def test_offline_leaves_cache_alone(self, cache, remote, events, user):
        today = local_day_iso()
        cache.set_day_totals(user.id, today, DailyAggregate(consumed=800))
        hydrator = CloudHydrator(cache, remote, events, ConnectivityMonitor(online=False))

        result = await hydrator.hydrate_today_totals_from_cloud(user)

        assert result.ok is False
        assert result.reason == "offline"
        assert cache.get_day_totals(user.id, today).consumed == 800
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_anonymous_skipped(self, hydrator, remote):
        result = await hydrator.hydrate_today_totals_from_cloud(None)
        assert result.reason == "no-user"
        assert remote.calls == []

    @pytest.mark.asyncio
    async def test_read_failure_leaves_cache_alone(self, cache, events, connectivity, user):
        today = local_day_iso()
        cache.set_day_totals(user.id, today, DailyAggregate(consumed=800))
        remote = AsyncMock()
        remote.fetch_daily_metric.side_effect = NetworkError("timeout")
        hydrator = CloudHydrator(cache, remote, events, connectivity)

        result = await hydrator.hydrate_today_totals_from_cloud(user)

        assert result.ok is False
        assert cache.get_day_totals(user.id, today).consumed == 800


class TestHydrateRecent:
    """Tests for recent workout and meal hydration."""

    @pytest.mark.asyncio
    async def test_workouts_merged_by_key(self, hydrator, cache, remote, recorded_events, user):
        cache.upsert_workout(user.id, {"client_id": "w1", "date": days_ago(1), "totalCalories": 111})
        await remote.upsert_workout({
            "user_id": user.id, "client_id": "w1", "local_day": days_ago(1), "total_calories": 999,
        })
        await remote.upsert_workout({
            "user_id": user.id, "client_id": "w2", "local_day": days_ago(2), "total_calories": 250,
            "items": {"exercises": [{"name": "Run", "calories": 250}]},
        })
        await remote.upsert_workout({
            "user_id": user.id, "client_id": "old", "local_day": days_ago(40), "total_calories": 10,
        })

        result = await hydrator.hydrate_recent_workouts_to_local(user)

        assert result.merged == 1
        history = {w["client_id"]: w for w in cache.read_workout_history(user.id)}
        assert set(history) == {"w1", "w2"}
        assert history["w1"]["totalCalories"] == 111
        assert history["w2"]["totalCalories"] == 250
        assert history["w2"]["exercises"][0]["name"] == "Run"
        assert recorded_events[-1].domain == EventDomain.WORKOUT_HISTORY

    @pytest.mark.asyncio
    async def test_meals_merged_into_day_buckets(self, hydrator, cache, remote, recorded_events, user):
        await remote.upsert_meal({
            "user_id": user.id, "client_id": "m1", "local_day": days_ago(1),
            "title": "Soup", "total_calories": 320,
        })

        result = await hydrator.hydrate_recent_meals_to_local(user)

        assert result.merged == 1
        buckets = cache.read_meal_history(user.id)
        assert buckets[0]["date"] == days_ago(1)
        assert buckets[0]["meals"][0]["name"] == "Soup"
        assert recorded_events[-1].domain == EventDomain.MEAL_HISTORY

        again = await hydrator.hydrate_recent_meals_to_local(user)
        assert again.merged == 0


class TestCalorieHistory:
    """Tests for calorie_history."""

    @pytest.mark.asyncio
    async def test_cloud_fills_gaps_only(self, hydrator, cache, remote, user):
        cache.set_day_totals(user.id, days_ago(1), DailyAggregate(consumed=100))
        await remote.upsert_daily_metric(DailyAggregate(consumed=500).to_remote(user.id, days_ago(1)))
        await remote.upsert_daily_metric(DailyAggregate(consumed=300, burned=100).to_remote(user.id, days_ago(2)))

        history = await hydrator.calorie_history(user, days=7)

        assert history[days_ago(1)]["eaten"] == 100
        assert history[days_ago(2)] == {"eaten": 300, "burned": 100, "net": 200}

    @pytest.mark.asyncio
    async def test_offline_uses_local_only(self, cache, remote, events, user):
        cache.set_day_totals(user.id, days_ago(1), DailyAggregate(consumed=100))
        hydrator = CloudHydrator(cache, remote, events, ConnectivityMonitor(online=False))

        history = await hydrator.calorie_history(user, days=7)

        assert list(history) == [days_ago(1)]
