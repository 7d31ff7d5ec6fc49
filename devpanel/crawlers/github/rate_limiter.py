"""Quota governor for the three independently limited GitHub API channels."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

logger = logging.getLogger(__name__)


class QuotaChannel(str, Enum):
    """Upstream budgets enforced separately by GitHub."""

    CORE = "core"
    SEARCH = "search"
    GRAPHQL = "graphql"


# Requests kept in reserve before the governor starts waiting.
CHANNEL_BUFFERS: dict[QuotaChannel, int] = {
    QuotaChannel.CORE: 100,
    QuotaChannel.SEARCH: 5,
    QuotaChannel.GRAPHQL: 100,
}

_DEFAULT_LIMITS: dict[QuotaChannel, int] = {
    QuotaChannel.CORE: 5000,
    QuotaChannel.SEARCH: 30,
    QuotaChannel.GRAPHQL: 5000,
}


@dataclass(frozen=True, slots=True)
class QuotaBudget:
    """Snapshot of one channel's budget as last reported by the API."""

    remaining: int
    limit: int
    reset_at: float  # epoch seconds

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["reset_at"] = datetime.fromtimestamp(self.reset_at, tz=UTC).isoformat()
        return payload


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _int_header(headers: Mapping[str, str], name: str, default: int) -> int:
    raw = _header(headers, name)
    if raw is None:
        return default
    try:
        return int(float(raw))
    except (TypeError, ValueError):
        return default


class GitHubRateLimiter:
    """
    Tracks the core, search and GraphQL budgets and gates outbound calls.

    One instance is shared by every collector in a process; state updates are
    guarded by a lock so status readers never observe a half-written budget.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._lock = threading.Lock()
        started = clock()
        self._budgets: dict[QuotaChannel, QuotaBudget] = {
            channel: QuotaBudget(remaining=limit, limit=limit, reset_at=started)
            for channel, limit in _DEFAULT_LIMITS.items()
        }

    def budget(self, channel: QuotaChannel) -> QuotaBudget:
        with self._lock:
            return self._budgets[QuotaChannel(channel)]

    def observe(self, channel: QuotaChannel, headers: Mapping[str, str]) -> QuotaBudget:
        """Replace the channel budget with the values reported in ``headers``."""
        budget = QuotaBudget(
            remaining=_int_header(headers, "x-ratelimit-remaining", 5000),
            limit=_int_header(headers, "x-ratelimit-limit", 5000),
            reset_at=float(_int_header(headers, "x-ratelimit-reset", 0)),
        )
        with self._lock:
            self._budgets[QuotaChannel(channel)] = budget
        return budget

    def wait_seconds(self, channel: QuotaChannel) -> float:
        """Seconds the caller must wait before using ``channel``; 0 when clear."""
        channel = QuotaChannel(channel)
        budget = self.budget(channel)
        if budget.remaining > CHANNEL_BUFFERS[channel]:
            return 0.0
        return max(0.0, budget.reset_at - self._clock() + 1.0)

    async def wait_if_needed(self, channel: QuotaChannel) -> float:
        """Suspend the calling task until the channel's reset when its reserve is spent."""
        delay = self.wait_seconds(channel)
        if delay > 0:
            budget = self.budget(channel)
            logger.warning(
                "GitHub rate limit reserve reached, waiting for reset",
                extra={
                    "channel": QuotaChannel(channel).value,
                    "remaining": budget.remaining,
                    "limit": budget.limit,
                    "wait_seconds": round(delay),
                },
            )
            await self._sleep(delay)
        return delay

    def can_proceed(self, channel: QuotaChannel) -> bool:
        channel = QuotaChannel(channel)
        budget = self.budget(channel)
        return budget.remaining > CHANNEL_BUFFERS[channel] or budget.reset_at < self._clock()

    def status(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {channel.value: budget.to_dict() for channel, budget in self._budgets.items()}
