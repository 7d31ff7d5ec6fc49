import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from devpanel.crawlers.github.cache import CACHE_MISS, InMemoryResponseCache, SQLAlchemyResponseCache
from devpanel.crawlers.github.contracts import GitHubRequestError
from devpanel.crawlers.github.executor import RequestExecutor, backoff_delay, is_retryable
from devpanel.crawlers.github.rate_limiter import GitHubRateLimiter, QuotaChannel


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _call_from_sequence(responses: list[httpx.Response | Exception]):
    queue = list(responses)
    calls: list[int] = []

    async def call() -> httpx.Response:
        calls.append(1)
        if not queue:
            raise AssertionError("No more mock responses available")
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return call, calls


def _executor(sleep: RecordingSleep, **kwargs) -> RequestExecutor:
    return RequestExecutor(
        rate_limiter=GitHubRateLimiter(sleep=sleep),
        cache=kwargs.pop("cache", InMemoryResponseCache()),
        backoff_base_seconds=1.0,
        backoff_max_seconds=30.0,
        sleep=sleep,
        jitter=lambda: 0.0,
        **kwargs,
    )


@pytest.mark.parametrize("base,cap", [(1.0, 30.0), (0.5, 4.0), (2.0, 2.0)])
def test_backoff_is_non_decreasing_and_capped(base: float, cap: float) -> None:
    delays = [backoff_delay(attempt, base_seconds=base, max_seconds=cap) for attempt in range(1, 12)]

    assert delays[0] == min(base, cap)
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    assert max(delays) <= cap


def test_retry_delay_adds_bounded_jitter() -> None:
    executor = RequestExecutor(rate_limiter=GitHubRateLimiter())

    for attempt in range(1, 6):
        delay = executor.retry_delay(attempt)
        base = backoff_delay(attempt, base_seconds=1.0, max_seconds=30.0)
        assert base <= delay <= base + 0.2


@pytest.mark.asyncio
async def test_cache_hit_skips_network_and_rate_limiter() -> None:
    sleep = RecordingSleep()
    executor = _executor(sleep)
    call, calls = _call_from_sequence([httpx.Response(200, json={"login": "octocat"})])

    first = await executor.execute(channel=QuotaChannel.CORE, cache_key="user:octocat", ttl_seconds=60, call=call)
    executor.rate_limiter.observe(QuotaChannel.CORE, {"x-ratelimit-remaining": "0", "x-ratelimit-reset": "9999999999"})
    second = await executor.execute(channel=QuotaChannel.CORE, cache_key="user:octocat", ttl_seconds=60, call=call)

    assert first == second == {"login": "octocat"}
    assert len(calls) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_expired_cache_entry_triggers_a_new_call() -> None:
    now = [1_000.0]
    cache = InMemoryResponseCache(clock=lambda: now[0])
    executor = _executor(RecordingSleep(), cache=cache)
    call, calls = _call_from_sequence([httpx.Response(200, json={"v": 1}), httpx.Response(200, json={"v": 2})])

    assert await executor.execute(channel=QuotaChannel.CORE, cache_key="k", ttl_seconds=10, call=call) == {"v": 1}
    now[0] += 11
    assert await executor.execute(channel=QuotaChannel.CORE, cache_key="k", ttl_seconds=10, call=call) == {"v": 2}
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_503_then_200_succeeds_on_second_attempt() -> None:
    sleep = RecordingSleep()
    executor = _executor(sleep, max_attempts=3)
    call, calls = _call_from_sequence(
        [
            httpx.Response(503, json={"message": "unavailable"}),
            httpx.Response(200, json={"ok": True}, headers={"x-ratelimit-remaining": "4999"}),
        ]
    )

    result = await executor.execute(channel=QuotaChannel.CORE, cache_key="repo:a/b", ttl_seconds=60, call=call)

    assert result == {"ok": True}
    assert len(calls) == 2
    assert sleep.calls == [1.0]
    assert executor.rate_limiter.budget(QuotaChannel.CORE).remaining == 4999


@pytest.mark.asyncio
async def test_404_propagates_without_retry() -> None:
    sleep = RecordingSleep()
    executor = _executor(sleep, max_attempts=3)
    call, calls = _call_from_sequence([httpx.Response(404, json={"message": "Not Found"})])

    with pytest.raises(GitHubRequestError) as exc_info:
        await executor.execute(channel=QuotaChannel.CORE, cache_key="user:ghost", ttl_seconds=60, call=call)

    assert exc_info.value.status_code == 404
    assert exc_info.value.is_not_found
    assert len(calls) == 1
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_exhausted_retries_raise_last_error() -> None:
    sleep = RecordingSleep()
    executor = _executor(sleep, max_attempts=3)
    call, calls = _call_from_sequence(
        [httpx.Response(502), httpx.Response(429), httpx.Response(500)]
    )

    with pytest.raises(GitHubRequestError) as exc_info:
        await executor.execute(channel=QuotaChannel.SEARCH, cache_key=None, ttl_seconds=60, call=call)

    assert exc_info.value.status_code == 500
    assert len(calls) == 3
    assert sleep.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_transport_errors_are_retried() -> None:
    executor = _executor(RecordingSleep(), max_attempts=2)
    call, calls = _call_from_sequence(
        [httpx.ConnectError("connection reset by peer"), httpx.Response(200, json=[1, 2])]
    )

    assert await executor.execute(channel=QuotaChannel.CORE, cache_key=None, ttl_seconds=60, call=call) == [1, 2]
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_timeout_is_retryable() -> None:
    sleep = RecordingSleep()
    executor = _executor(sleep, max_attempts=2, timeout_seconds=0.01)
    attempts: list[int] = []

    async def call() -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            await asyncio.sleep(1)
        return httpx.Response(200, json={"late": False})

    assert await executor.execute(channel=QuotaChannel.CORE, cache_key=None, ttl_seconds=60, call=call) == {"late": False}
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_none_result_is_not_cached() -> None:
    cache = InMemoryResponseCache()
    executor = _executor(RecordingSleep(), cache=cache)
    call, calls = _call_from_sequence([httpx.Response(202), httpx.Response(202)])

    for _ in range(2):
        assert await executor.execute(channel=QuotaChannel.CORE, cache_key="stats", ttl_seconds=60, call=call) is None

    assert len(calls) == 2
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_throttle_sleeps_after_successful_call() -> None:
    sleep = RecordingSleep()
    executor = _executor(sleep)
    call, _ = _call_from_sequence([httpx.Response(200, json={"data": {}})])

    await executor.execute(channel=QuotaChannel.GRAPHQL, cache_key=None, ttl_seconds=60, call=call, throttle_seconds=0.8)

    assert sleep.calls == [0.8]


@pytest.mark.parametrize(
    "exc,expected",
    [
        (GitHubRequestError("boom", status_code=503), True),
        (GitHubRequestError("rate limited", status_code=429), True),
        (GitHubRequestError("forbidden", status_code=403), False),
        (GitHubRequestError("missing", status_code=404), False),
        (httpx.ReadTimeout("read timed out"), True),
        (asyncio.TimeoutError(), True),
        (RuntimeError("fetch failed"), True),
        (RuntimeError("The operation was aborted"), True),
        (ValueError("bad json"), False),
    ],
)
def test_retry_classification(exc: BaseException, expected: bool) -> None:
    assert is_retryable(exc) is expected


def test_database_cache_round_trips_and_purges(session_factory) -> None:
    now = [datetime(2024, 1, 1, 12, 0)]
    cache = SQLAlchemyResponseCache(session_factory, clock=lambda: now[0])

    assert cache.get("user:octocat") is CACHE_MISS
    cache.set("user:octocat", {"login": "octocat", "followers": 10}, ttl_seconds=60)
    cache.set("user:octocat", {"login": "octocat", "followers": 11}, ttl_seconds=60)
    cache.set("search:users:50-100", [{"id": 1}], ttl_seconds=3600)

    assert cache.get("user:octocat") == {"login": "octocat", "followers": 11}

    now[0] += timedelta(seconds=61)
    assert cache.get("user:octocat") is CACHE_MISS
    assert cache.purge_expired() == 1
    assert cache.get("search:users:50-100") == [{"id": 1}]


def test_in_memory_cache_purges_only_expired_entries() -> None:
    now = [1000.0]
    cache = InMemoryResponseCache(clock=lambda: now[0])
    cache.set("short", 1, ttl_seconds=10)
    cache.set("long", 2, ttl_seconds=100)

    now[0] = 1050.0

    assert cache.purge_expired() == 1
    assert len(cache) == 1
    assert cache.get("long") == 2
