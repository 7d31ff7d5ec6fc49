"""Deterministic stratified sampling of GitHub users by follower band."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator, Iterable, Optional, Protocol, Sequence, TypeVar

from devpanel.crawlers.github.contracts import SearchUserHit
from devpanel.utils.helpers import clamp_int

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MASK = 0xFFFFFFFF
SEARCH_ORDERS: tuple[str, ...] = ("desc", "asc")


@dataclass(frozen=True, slots=True)
class FollowerBand:
    """One sampling stratum; ``max_followers`` of None means open-ended."""

    tier: str
    min_followers: int
    max_followers: Optional[int]
    target: int = 100

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_USER_BANDS: tuple[FollowerBand, ...] = (
    FollowerBand("top", 10000, None),
    FollowerBand("top", 5000, 10000),
    FollowerBand("mid", 2000, 5000),
    FollowerBand("mid", 1000, 2000),
    FollowerBand("mid", 500, 1000),
    FollowerBand("casual", 300, 500),
    FollowerBand("casual", 200, 300),
    FollowerBand("casual", 150, 200),
    FollowerBand("casual", 100, 150),
    FollowerBand("casual", 50, 100),
)


def resolve_bands(users_per_band: Optional[int] = None) -> list[FollowerBand]:
    """Default bands, with every target replaced when ``users_per_band`` is set."""
    if users_per_band is None:
        return list(DEFAULT_USER_BANDS)
    target = clamp_int(users_per_band, 1, 1000)
    return [
        FollowerBand(band.tier, band.min_followers, band.max_followers, target)
        for band in DEFAULT_USER_BANDS
    ]


def make_band_seed(base_seed: int, min_followers: int, max_followers: Optional[int]) -> int:
    """Per-band seed: ``(base + min*31 + (max or 0)*17) mod 2**32``."""
    return (base_seed + min_followers * 31 + (max_followers or 0) * 17) & _MASK


class Mulberry32:
    """
    Small 32-bit PRNG with a stable, platform-independent sequence.

    Arithmetic is masked to 32 bits at every step so the stream matches
    reference implementations that rely on 32-bit integer multiplication.
    """

    def __init__(self, seed: int) -> None:
        self._state = seed & _MASK

    def next_float(self) -> float:
        """Next value in ``[0, 1)``."""
        self._state = (self._state + 0x6D2B79F5) & _MASK
        t = self._state
        r = ((t ^ (t >> 15)) * (t | 1)) & _MASK
        r ^= (r + (((r ^ (r >> 7)) * (r | 61)) & _MASK)) & _MASK
        return ((r ^ (r >> 14)) & _MASK) / 4294967296.0

    __call__ = next_float


def seeded_shuffle(items: Iterable[T], seed: int) -> list[T]:
    """Fisher-Yates shuffle driven by Mulberry32; returns a new list."""
    shuffled = list(items)
    rng = Mulberry32(seed)
    for i in range(len(shuffled) - 1, 0, -1):
        j = int(rng() * (i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def dedupe_by_id(hits: Iterable[SearchUserHit]) -> list[SearchUserHit]:
    """Drop repeated ids; first-seen order, last occurrence's payload wins."""
    by_id: dict[int, SearchUserHit] = {}
    for hit in hits:
        by_id[hit.id] = hit
    return list(by_id.values())


class UserSearcher(Protocol):
    async def search_users(
        self,
        min_followers: int,
        max_followers: Optional[int],
        *,
        per_page: int = ...,
        page: int = ...,
        order: str = ...,
    ) -> list[SearchUserHit]: ...


class DeterministicSampler:
    """
    Draws a reproducible sample of users from each follower band.

    Each band is searched in descending and ascending follower order (GitHub
    search caps how deep one ordering can page), results are de-duplicated,
    shuffled with the band seed and truncated to the band target. Given the
    same search results and seed, the selection is identical across runs.
    """

    def __init__(
        self,
        searcher: UserSearcher,
        *,
        per_page: int = 100,
        pages_per_order: int = 2,
        orders: Sequence[str] = SEARCH_ORDERS,
    ) -> None:
        self._searcher = searcher
        self.per_page = clamp_int(per_page, 1, 100)
        self.pages_per_order = clamp_int(pages_per_order, 1, 10)
        self.orders = tuple(orders)

    async def sample_band(self, band: FollowerBand, seed: int) -> list[SearchUserHit]:
        candidates: list[SearchUserHit] = []
        for order in self.orders:
            for page in range(1, self.pages_per_order + 1):
                hits = await self._searcher.search_users(
                    band.min_followers,
                    band.max_followers,
                    per_page=self.per_page,
                    page=page,
                    order=order,
                )
                candidates.extend(hits)

        unique = dedupe_by_id(candidates)
        selected = seeded_shuffle(unique, seed)[: max(band.target, 0)]
        logger.info(
            "Sampled follower band",
            extra={
                "tier": band.tier,
                "min_followers": band.min_followers,
                "max_followers": band.max_followers,
                "candidates": len(unique),
                "selected": len(selected),
            },
        )
        return selected

    async def iter_bands(
        self,
        bands: Sequence[FollowerBand],
        base_seed: int,
    ) -> AsyncIterator[tuple[FollowerBand, list[SearchUserHit]]]:
        """
        Sample every band with its derived seed, yielding each band as soon as
        it is drawn so callers can onboard it before the next search starts.
        """
        for band in bands:
            seed = make_band_seed(base_seed, band.min_followers, band.max_followers)
            yield band, await self.sample_band(band, seed)
