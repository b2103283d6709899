"""
Remote Store Tests

Tests for the PostgREST adapter (over httpx.MockTransport), the rate limiter
and the in-memory store.
"""

import json

import httpx
import pytest

from slimcal_sync.remote import (
    AuthenticationError,
    InMemoryRemoteStore,
    NetworkError,
    RateLimiter,
    RateLimitError,
    RestRemoteStore,
    SyncError,
)


def make_store(settings, handler, sleep, **kwargs):
    return RestRemoteStore(settings, transport=httpx.MockTransport(handler), sleep=sleep, **kwargs)


class TestRestWrites:
    """Tests for upsert and delete request shapes."""

    @pytest.mark.asyncio
    async def test_upsert_workout(self, settings, sleep):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json=[json.loads(request.content)])

        store = make_store(settings, handler, sleep)
        row = await store.upsert_workout({"user_id": "u1", "client_id": "w1", "total_calories": 300})

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/rest/v1/workouts"
        assert request.url.params["on_conflict"] == "client_id"
        assert "resolution=merge-duplicates" in request.headers["Prefer"]
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer anon-key"
        assert row["client_id"] == "w1"
        await store.close()

    @pytest.mark.asyncio
    async def test_access_token_used_as_bearer(self, settings, sleep):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        store = make_store(settings, handler, sleep)
        store.set_access_token("user-jwt")
        await store.delete_meal("u1", "m1")

        request = seen[0]
        assert request.method == "DELETE"
        assert request.url.path == "/rest/v1/meals"
        assert request.url.params["user_id"] == "eq.u1"
        assert request.url.params["client_id"] == "eq.m1"
        assert request.headers["Authorization"] == "Bearer user-jwt"

    @pytest.mark.asyncio
    async def test_daily_metric_falls_back_to_legacy_columns(self, settings, sleep):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.params["on_conflict"] == "user_id,local_day":
                return httpx.Response(
                    400, json={"message": 'column "local_day" of relation "daily_metrics" does not exist'}
                )
            return httpx.Response(201, json=[json.loads(request.content)])

        store = make_store(settings, handler, sleep)
        row = await store.upsert_daily_metric({
            "user_id": "u1", "local_day": "2024-01-02",
            "calories_eaten": 500, "calories_burned": 100, "net_calories": 400,
        })

        assert len(seen) == 2
        assert seen[1].url.params["on_conflict"] == "user_id,day"
        assert row == {
            "user_id": "u1", "day": "2024-01-02", "cals_eaten": 500,
            "cals_burned": 100, "net_cals": 400, "updated_at": None,
        }

    @pytest.mark.asyncio
    async def test_other_client_errors_raise(self, settings, sleep):
        store = make_store(settings, lambda request: httpx.Response(409, text="conflict"), sleep)

        with pytest.raises(SyncError) as exc:
            await store.upsert_meal({"user_id": "u1", "client_id": "m1"})
        assert exc.value.status_code == 409
        assert sleep.delays == []


class TestRestReads:
    """Tests for filtered selects."""

    @pytest.mark.asyncio
    async def test_fetch_daily_metric(self, settings, sleep):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[])

        store = make_store(settings, handler, sleep)
        assert await store.fetch_daily_metric("u1", "2024-01-02") is None

        params = seen[0].url.params
        assert params["user_id"] == "eq.u1"
        assert params["local_day"] == "eq.2024-01-02"

    @pytest.mark.asyncio
    async def test_fetch_daily_metrics_range(self, settings, sleep):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=[{"local_day": "2024-01-02", "calories_eaten": 10}])

        store = make_store(settings, handler, sleep)
        rows = await store.fetch_daily_metrics("u1", "2024-01-01", "2024-01-07")

        assert rows == [{"local_day": "2024-01-02", "calories_eaten": 10}]
        assert seen[0].url.params.get_list("local_day") == ["gte.2024-01-01", "lte.2024-01-07"]

    @pytest.mark.asyncio
    async def test_health_check(self, settings, sleep):
        store = make_store(settings, lambda request: httpx.Response(200), sleep)
        assert await store.health_check() is True


class TestRestErrors:
    """Tests for error mapping and retries."""

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, settings, sleep):
        store = make_store(settings, lambda request: httpx.Response(401), sleep)

        with pytest.raises(AuthenticationError):
            await store.fetch_workouts("u1", "2024-01-01")
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_server_errors_retried(self, settings, sleep):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(503)

        store = make_store(settings, handler, sleep)

        with pytest.raises(SyncError) as exc:
            await store.fetch_meals("u1", "2024-01-01")
        assert exc.value.status_code == 503
        assert len(attempts) == settings.remote_max_retries + 1
        assert len(sleep.delays) == settings.remote_max_retries

    @pytest.mark.asyncio
    async def test_server_error_then_success(self, settings, sleep):
        responses = [httpx.Response(500), httpx.Response(200, json=[{"client_id": "m1"}])]
        store = make_store(settings, lambda request: responses.pop(0), sleep)

        rows = await store.fetch_meals("u1", "2024-01-01")

        assert rows == [{"client_id": "m1"}]
        assert len(sleep.delays) == 1

    @pytest.mark.asyncio
    async def test_rate_limited(self, settings, sleep):
        store = make_store(settings, lambda request: httpx.Response(429, headers={"Retry-After": "3"}), sleep)

        with pytest.raises(RateLimitError) as exc:
            await store.fetch_meals("u1", "2024-01-01")
        assert exc.value.retry_after == 3
        assert sleep.delays == [3, 3]

    @pytest.mark.asyncio
    async def test_network_errors(self, settings, sleep):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        store = make_store(settings, handler, sleep)

        with pytest.raises(NetworkError):
            await store.upsert_meal({"user_id": "u1", "client_id": "m1"})

    def test_backoff_is_capped(self, settings):
        store = RestRemoteStore(settings)
        delays = [store._calculate_backoff(attempt) for attempt in range(10)]
        assert all(d <= settings.remote_max_retry_delay for d in delays)
        assert delays[0] >= settings.remote_base_retry_delay


class TestRateLimiter:
    """Tests for rate limiting."""

    @pytest.mark.asyncio
    async def test_counts_requests(self):
        limiter = RateLimiter(requests_per_minute=5, requests_per_hour=100)
        assert limiter.remaining_minute == 5

        await limiter.acquire()
        await limiter.acquire()

        assert limiter.remaining_minute == 3
        assert limiter.remaining_hour == 98

    @pytest.mark.asyncio
    async def test_full_minute_window_waits_for_oldest_request(self, clock):
        waits = []

        async def advancing_sleep(seconds):
            waits.append(seconds)
            clock.advance(seconds)

        limiter = RateLimiter(requests_per_minute=2, requests_per_hour=100, clock=clock, sleep=advancing_sleep)
        await limiter.acquire()
        clock.advance(10)
        await limiter.acquire()
        assert waits == []

        await limiter.acquire()

        assert waits == [50]
        assert limiter.remaining_minute == 0
        assert limiter.remaining_hour == 97

    @pytest.mark.asyncio
    async def test_requests_age_out_of_the_window(self, clock):
        limiter = RateLimiter(requests_per_minute=1, requests_per_hour=10, clock=clock)
        await limiter.acquire()
        assert limiter.remaining_minute == 0

        clock.advance(61)

        assert limiter.remaining_minute == 1
        assert limiter.remaining_hour == 9


class TestInMemoryRemoteStore:
    """Tests for the dict-backed remote."""

    @pytest.mark.asyncio
    async def test_upsert_merges_by_key(self):
        store = InMemoryRemoteStore()
        await store.upsert_meal({"user_id": "u1", "client_id": "m1", "title": "A", "total_calories": 1})
        await store.upsert_meal({"user_id": "u1", "client_id": "m1", "total_calories": 2})

        assert store.meals == {"m1": {"user_id": "u1", "client_id": "m1", "title": "A", "total_calories": 2}}

    @pytest.mark.asyncio
    async def test_delete_scoped_to_owner(self):
        store = InMemoryRemoteStore()
        await store.upsert_workout({"user_id": "u1", "client_id": "w1"})

        await store.delete_workout("u2", "w1")
        assert "w1" in store.workouts
        await store.delete_workout("u1", "w1")
        assert store.workouts == {}

    @pytest.mark.asyncio
    async def test_fail_with(self):
        store = InMemoryRemoteStore()
        store.fail_with = NetworkError("down")

        with pytest.raises(NetworkError):
            await store.fetch_daily_metric("u1", "2024-01-02")
        assert await store.health_check() is False
