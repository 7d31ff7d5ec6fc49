"""User onboarding stage: profile gate, contribution calendar, baseline gate."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any, Callable, Protocol, Sequence

from sqlalchemy.dialects import postgresql, sqlite

from devpanel.crawlers.github.contracts import ContributionCalendar, SearchUserHit, UserProfile
from devpanel.models.sampled_user import SampledUser
from devpanel.models.user_contribution_daily import UserContributionDaily
from devpanel.utils.helpers import chunked, sanitize_log_extra, utcnow

logger = logging.getLogger(__name__)

BOT_SUFFIX = "[bot]"


@dataclass(slots=True)
class ContributionStageStats:
    """Stage execution statistics."""

    processed: int = 0
    admitted: int = 0
    rejected: int = 0
    gated_out: int = 0
    failed: int = 0


@dataclass(frozen=True, slots=True)
class YearWindow:
    year: int
    start: datetime
    end: datetime


def year_window(year: int, now: datetime | None = None) -> YearWindow | None:
    """UTC window for one calendar year clipped to ``now``; None for a future year."""
    now = now or datetime.now(UTC)
    start = datetime(year, 1, 1, tzinfo=UTC)
    if start > now:
        return None
    end = min(datetime(year, 12, 31, 23, 59, 59, tzinfo=UTC), now)
    return YearWindow(year=year, start=start, end=end)


class ContributionsClient(Protocol):
    async def get_user(self, username: str) -> UserProfile: ...

    async def get_user_contributions(self, username: str, start: datetime, end: datetime) -> ContributionCalendar: ...


class ContributionRepository(Protocol):
    """Storage interface for cohort members and their daily rows."""

    def upsert_user(self, *, hit: SearchUserHit, profile: UserProfile, tier: str) -> int: ...

    def upsert_daily_rows(self, user_id: int, rows: Sequence[tuple[date, int]]) -> None: ...

    def delete_user(self, user_id: int) -> None: ...

    def update_totals(self, user_id: int, *, total: int, baseline: int) -> None: ...

    def rollback(self) -> None: ...


class SQLAlchemyContributionRepository:
    """SQLAlchemy-backed repository for sampled_users and user_contribution_daily."""

    def __init__(self, session: Any) -> None:
        self._session = session

    def upsert_user(self, *, hit: SearchUserHit, profile: UserProfile, tier: str) -> int:
        now = utcnow()
        user = self._session.query(SampledUser).filter(SampledUser.github_id == hit.id).one_or_none()
        if user is None:
            user = SampledUser(
                github_id=hit.id,
                username=hit.login,
                tier=tier,
                avatar_url=hit.avatar_url,
                profile_url=hit.html_url,
                followers=profile.followers,
                public_repos=profile.public_repos,
                total_contributions=0,
                last_synced_at=now,
            )
            self._session.add(user)
        else:
            user.tier = tier
            user.avatar_url = hit.avatar_url
            user.followers = profile.followers
            user.public_repos = profile.public_repos
            user.last_synced_at = now
        self._session.commit()
        return int(user.id)

    def upsert_daily_rows(self, user_id: int, rows: Sequence[tuple[date, int]]) -> None:
        if not rows:
            return
        dialect = self._session.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        values = [{"date": day, "user_id": user_id, "contribution_count": count} for day, count in rows]
        statement = insert(UserContributionDaily).values(values)
        statement = statement.on_conflict_do_update(
            index_elements=["date", "user_id"],
            set_={"contribution_count": statement.excluded.contribution_count},
        )
        self._session.execute(statement)
        self._session.commit()

    def delete_user(self, user_id: int) -> None:
        user = self._session.get(SampledUser, user_id)
        if user is not None:
            self._session.delete(user)
            self._session.commit()

    def update_totals(self, user_id: int, *, total: int, baseline: int) -> None:
        user = self._session.get(SampledUser, user_id)
        if user is None:
            return
        user.total_contributions = total
        user.baseline_contributions = baseline
        self._session.commit()

    def rollback(self) -> None:
        """Discard a failed write so the next user starts from a clean session."""
        self._session.rollback()


class ContributionStage:
    """
    Admits a sampled user into the cohort or leaves no trace of them.

    The user row is written first so daily rows have a parent; when the
    baseline years cannot be fetched or fall below the activity threshold the
    row is deleted and its daily rows cascade with it. Re-running the stage
    for a user yields the same rows.
    """

    def __init__(
        self,
        *,
        client: ContributionsClient,
        repository: ContributionRepository,
        baseline_years: Sequence[int] = (2020, 2021),
        contribution_years: Sequence[int] = (2020, 2021, 2022, 2023, 2024, 2025),
        baseline_min_contributions: int = 50,
        chunk_size: int = 200,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._repository = repository
        self._baseline_years = tuple(baseline_years)
        self._post_years = tuple(year for year in contribution_years if year not in set(baseline_years))
        self._baseline_min = baseline_min_contributions
        self._chunk_size = chunk_size
        self._clock = clock or (lambda: datetime.now(UTC))

    async def run(self, candidates: Sequence[tuple[SearchUserHit, str]]) -> ContributionStageStats:
        stats = ContributionStageStats()
        for hit, tier in candidates:
            stats.processed += 1
            try:
                outcome = await self.onboard_user(hit, tier)
            except Exception as exc:
                self._repository.rollback()
                stats.failed += 1
                logger.warning(
                    "User onboarding failed",
                    extra=sanitize_log_extra(login=hit.login, error=str(exc)),
                )
                continue
            if outcome is True:
                stats.admitted += 1
            elif outcome is None:
                stats.rejected += 1
            else:
                stats.gated_out += 1
        return stats

    async def onboard_user(self, hit: SearchUserHit, tier: str) -> bool | None:
        """
        Returns True when admitted, False when the baseline gate removed the
        user, and None when the profile was unusable (fetch error, org or bot).
        """
        try:
            profile = await self._client.get_user(hit.login)
        except Exception as exc:
            logger.warning(
                "User profile fetch failed",
                extra=sanitize_log_extra(login=hit.login, error=str(exc)),
            )
            return None

        if profile.is_organization or hit.login.endswith(BOT_SUFFIX):
            return None

        user_id = self._repository.upsert_user(hit=hit, profile=profile, tier=tier)

        total = 0
        baseline = 0
        baseline_failed = False
        for year in self._baseline_years:
            try:
                collected = await self._collect_year(user_id, hit.login, year)
            except Exception as exc:
                self._repository.rollback()
                baseline_failed = True
                logger.warning(
                    "Baseline contribution fetch failed",
                    extra=sanitize_log_extra(login=hit.login, year=year, error=str(exc)),
                )
                continue
            total += collected
            baseline += collected

        if baseline_failed or baseline < self._baseline_min:
            self._repository.delete_user(user_id)
            logger.info(
                "User removed by baseline gate",
                extra={"login": hit.login, "baseline": baseline, "fetch_failed": baseline_failed},
            )
            return False

        for year in self._post_years:
            try:
                total += await self._collect_year(user_id, hit.login, year)
            except Exception as exc:
                self._repository.rollback()
                logger.warning(
                    "Contribution fetch failed",
                    extra=sanitize_log_extra(login=hit.login, year=year, error=str(exc)),
                )

        self._repository.update_totals(user_id, total=total, baseline=baseline)
        return True

    async def _collect_year(self, user_id: int, login: str, year: int) -> int:
        window = year_window(year, self._clock())
        if window is None:
            return 0

        calendar = await self._client.get_user_contributions(login, window.start, window.end)
        rows = [(day.date, day.count) for day in calendar.active_days()]
        for chunk in chunked(rows, self._chunk_size):
            self._repository.upsert_daily_rows(user_id, chunk)
        return sum(count for _, count in rows)
