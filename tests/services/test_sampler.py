import asyncio
from typing import Optional

import pytest

from devpanel.crawlers.github.contracts import SearchUserHit
from devpanel.services.sampler import (
    DEFAULT_USER_BANDS,
    DeterministicSampler,
    FollowerBand,
    Mulberry32,
    dedupe_by_id,
    make_band_seed,
    resolve_bands,
    seeded_shuffle,
)


class FakeSearcher:
    """Returns ``per_page`` users per page; ascending order overlaps the descending one."""

    def __init__(self, population: int = 40) -> None:
        self.population = population
        self.calls: list[tuple[int, Optional[int], int, str]] = []

    async def search_users(self, min_followers, max_followers, *, per_page=100, page=1, order="desc"):
        self.calls.append((min_followers, max_followers, page, order))
        ids = list(range(1, self.population + 1))
        if order == "asc":
            ids.reverse()
        window = ids[(page - 1) * per_page: page * per_page]
        return [SearchUserHit(id=min_followers * 1000 + i, login=f"user{min_followers}-{i}") for i in window]


class FailingSearcher:
    async def search_users(self, *_, **__):
        raise RuntimeError("search unavailable")


def test_mulberry32_is_deterministic_and_bounded() -> None:
    first = Mulberry32(12345)
    second = Mulberry32(12345)

    draws = [first() for _ in range(500)]

    assert draws == [second.next_float() for _ in range(500)]
    assert all(0.0 <= value < 1.0 for value in draws)
    assert len(set(draws)) > 490


def test_mulberry32_masks_seed_to_32_bits() -> None:
    assert [Mulberry32(7)() for _ in range(3)] == [Mulberry32(7 + 2**32)() for _ in range(3)]


def test_seeded_shuffle_is_a_reproducible_permutation() -> None:
    items = list(range(50))

    shuffled = seeded_shuffle(items, 42)

    assert sorted(shuffled) == items
    assert shuffled == seeded_shuffle(items, 42)
    assert shuffled != seeded_shuffle(items, 43)
    assert items == list(range(50))


def test_seeded_shuffle_handles_trivial_inputs() -> None:
    assert seeded_shuffle([], 1) == []
    assert seeded_shuffle(["only"], 1) == ["only"]


def test_band_seeds_are_distinct_for_default_bands() -> None:
    seeds = {make_band_seed(42, band.min_followers, band.max_followers) for band in DEFAULT_USER_BANDS}

    assert len(seeds) == len(DEFAULT_USER_BANDS)
    assert make_band_seed(0, 10000, None) == 310000
    assert make_band_seed(2**32 - 1, 50, 100) == 3249


def test_resolve_bands_overrides_and_clamps_target() -> None:
    assert resolve_bands() == list(DEFAULT_USER_BANDS)
    assert {band.target for band in resolve_bands(25)} == {25}
    assert {band.target for band in resolve_bands(5000)} == {1000}
    assert {band.target for band in resolve_bands(0)} == {1}


def test_dedupe_keeps_first_position_and_last_payload() -> None:
    hits = [
        SearchUserHit(id=1, login="old-name"),
        SearchUserHit(id=2, login="b"),
        SearchUserHit(id=1, login="new-name"),
    ]

    assert dedupe_by_id(hits) == [SearchUserHit(id=1, login="new-name"), SearchUserHit(id=2, login="b")]


def test_sample_band_searches_both_orders_dedupes_and_truncates() -> None:
    searcher = FakeSearcher(population=40)
    sampler = DeterministicSampler(searcher, per_page=10, pages_per_order=2)
    band = FollowerBand("casual", 50, 100, target=15)

    selected = asyncio.run(sampler.sample_band(band, seed=99))

    assert len(selected) == 15
    assert len({hit.id for hit in selected}) == 15
    assert [(call[2], call[3]) for call in searcher.calls] == [(1, "desc"), (2, "desc"), (1, "asc"), (2, "asc")]


def test_sample_band_returns_all_candidates_when_below_target() -> None:
    sampler = DeterministicSampler(FakeSearcher(population=5), per_page=10, pages_per_order=1)

    selected = asyncio.run(sampler.sample_band(FollowerBand("top", 10000, None, target=100), seed=1))

    assert len(selected) == 5


async def _collect(sampler: DeterministicSampler, bands, base_seed: int) -> list[tuple[FollowerBand, list[SearchUserHit]]]:
    return [(band, hits) async for band, hits in sampler.iter_bands(bands, base_seed)]


def test_iter_bands_is_identical_across_runs_with_same_seed() -> None:
    bands = resolve_bands(5)[:3]

    first = asyncio.run(_collect(DeterministicSampler(FakeSearcher(), per_page=20), bands, 7))
    second = asyncio.run(_collect(DeterministicSampler(FakeSearcher(), per_page=20), bands, 7))
    other = asyncio.run(_collect(DeterministicSampler(FakeSearcher(), per_page=20), bands, 8))

    assert first == second
    assert first != other
    assert [band for band, _ in first] == bands


def test_iter_bands_searches_each_band_before_yielding_it() -> None:
    searcher = FakeSearcher()
    sampler = DeterministicSampler(searcher, per_page=10, pages_per_order=1)
    bands = resolve_bands(3)[:2]
    searched_per_yield: list[tuple[str, int, int]] = []

    async def consume() -> None:
        async for band, hits in sampler.iter_bands(bands, base_seed=1):
            searched_per_yield.append((band.tier, len(hits), len(searcher.calls)))

    asyncio.run(consume())

    assert searched_per_yield == [("top", 3, 2), ("top", 3, 4)]


def test_search_failure_propagates() -> None:
    sampler = DeterministicSampler(FailingSearcher())

    with pytest.raises(RuntimeError, match="search unavailable"):
        asyncio.run(sampler.sample_band(FollowerBand("mid", 500, 1000), seed=1))
