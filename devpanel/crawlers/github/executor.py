"""Governed call: cache lookup, quota gate, timeout, retry with backoff."""

from __future__ import annotations

import asyncio
import logging
import random
import socket
from typing import Any, Awaitable, Callable

import httpx

from devpanel.crawlers.github.cache import CACHE_MISS, InMemoryResponseCache, ResponseCache
from devpanel.crawlers.github.contracts import GitHubRequestError
from devpanel.crawlers.github.rate_limiter import GitHubRateLimiter, QuotaChannel
from devpanel.utils.helpers import sanitize_log_extra

logger = logging.getLogger(__name__)

MAX_JITTER_SECONDS = 0.2
_RETRYABLE_MESSAGES = ("fetch failed", "aborted", "connection reset", "timed out")


def is_retryable(exc: BaseException) -> bool:
    """Classify a failed attempt as transient."""
    if isinstance(exc, GitHubRequestError):
        return exc.retryable
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, ConnectionError, socket.gaierror)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _RETRYABLE_MESSAGES)


def backoff_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    """Non-jittered delay before retrying after ``attempt`` (1-based) failed."""
    return min(base_seconds * (2 ** max(attempt - 1, 0)), max_seconds)


def _request_path(response: httpx.Response) -> str:
    try:
        return response.request.url.path
    except RuntimeError:
        return "unknown request"


def default_parse(response: httpx.Response) -> Any:
    if response.status_code == 204 or not response.content:
        return None
    return response.json()


class RequestExecutor:
    """
    Runs every upstream operation under the same policy.

    A call is identified by ``cache_key``; a live cache entry short-circuits
    the network and the rate limiter entirely. Otherwise the channel is
    gated, the call runs under a timeout, transient failures are retried
    with exponential backoff and jitter, and a success updates the channel
    budget before its parsed value is cached.
    """

    def __init__(
        self,
        *,
        rate_limiter: GitHubRateLimiter,
        cache: ResponseCache | None = None,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        timeout_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        jitter: Callable[[], float] | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.cache = cache if cache is not None else InMemoryResponseCache()
        self._max_attempts = max(1, int(max_attempts))
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._timeout = timeout_seconds
        self._sleep = sleep or asyncio.sleep
        self._jitter = jitter or (lambda: random.uniform(0.0, MAX_JITTER_SECONDS))

    def retry_delay(self, attempt: int) -> float:
        return backoff_delay(attempt, base_seconds=self._backoff_base, max_seconds=self._backoff_max) + self._jitter()

    async def execute(
        self,
        *,
        channel: QuotaChannel,
        cache_key: str | None,
        ttl_seconds: int,
        call: Callable[[], Awaitable[httpx.Response]],
        parse: Callable[[httpx.Response], Any] = default_parse,
        throttle_seconds: float = 0.0,
    ) -> Any:
        if cache_key is not None:
            cached = self.cache.get(cache_key)
            if cached is not CACHE_MISS:
                return cached

        attempt = 0
        while True:
            attempt += 1
            await self.rate_limiter.wait_if_needed(channel)
            try:
                response = await asyncio.wait_for(call(), timeout=self._timeout)
                if response.status_code >= 400:
                    raise GitHubRequestError(
                        f"GitHub responded {response.status_code} for {_request_path(response)}",
                        status_code=response.status_code,
                    )
                value = parse(response)
            except Exception as exc:
                if not is_retryable(exc) or attempt >= self._max_attempts:
                    logger.warning(
                        "GitHub request failed",
                        extra=sanitize_log_extra(
                            cache_key=cache_key,
                            attempt=attempt,
                            status_code=getattr(exc, "status_code", None),
                            error=str(exc) or type(exc).__name__,
                        ),
                    )
                    raise
                delay = self.retry_delay(attempt)
                logger.info(
                    "Retrying GitHub request",
                    extra=sanitize_log_extra(cache_key=cache_key, attempt=attempt, delay_seconds=round(delay, 3)),
                )
                await self._sleep(delay)
                continue

            self.rate_limiter.observe(channel, response.headers)
            if throttle_seconds > 0:
                await self._sleep(throttle_seconds)
            if cache_key is not None and value is not None:
                self.cache.set(cache_key, value, int(ttl_seconds))
            return value
