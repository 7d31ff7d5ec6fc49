"""Repository flow stage: weekly commits, daily pull request and issue buckets."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any, Iterable, Optional, Protocol, Sequence

from devpanel.crawlers.github.contracts import (
    ContributorStats,
    IssueEvent,
    PullRequestEvent,
    SearchRepoHit,
)
from devpanel.models.flow_metrics import CommitMetrics, IssueMetrics, PullRequestMetrics
from devpanel.models.sampled_repo import SampledRepo
from devpanel.utils.helpers import sanitize_log_extra, utc_day, utcnow

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0


@dataclass(slots=True)
class WeekTotals:
    commits: int = 0
    added: int = 0
    removed: int = 0


@dataclass(slots=True)
class PullRequestDay:
    opened: int = 0
    closed: int = 0
    merged: int = 0
    merge_hours_total: float = 0.0
    merge_count: int = 0

    @property
    def avg_time_to_merge_hrs(self) -> Optional[float]:
        return self.merge_hours_total / self.merge_count if self.merge_count else None


@dataclass(slots=True)
class IssueDay:
    opened: int = 0
    closed: int = 0
    resolution_hours_total: float = 0.0
    resolution_count: int = 0

    @property
    def avg_resolution_hrs(self) -> Optional[float]:
        return self.resolution_hours_total / self.resolution_count if self.resolution_count else None


@dataclass(slots=True)
class FlowStageStats:
    """Stage execution statistics."""

    repos: int = 0
    commit_weeks: int = 0
    pr_days: int = 0
    issue_days: int = 0
    stats_pending: int = 0
    errors: list[str] = field(default_factory=list)


def aggregate_contributor_weeks(stats: Iterable[ContributorStats]) -> dict[date, WeekTotals]:
    """Sum weekly buckets across contributors, ignoring anonymous authors and empty weeks."""
    weeks: dict[date, WeekTotals] = {}
    for contributor in stats:
        if contributor.author_login is None:
            continue
        for week in contributor.weeks:
            if not week.week_start or week.commits <= 0:
                continue
            key = datetime.fromtimestamp(week.week_start, tz=UTC).date()
            totals = weeks.setdefault(key, WeekTotals())
            totals.commits += week.commits
            totals.added += week.additions
            totals.removed += week.deletions
    return dict(sorted(weeks.items()))


def _hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / SECONDS_PER_HOUR


def bucket_pull_requests(prs: Iterable[PullRequestEvent]) -> dict[date, PullRequestDay]:
    """
    Re-bucket pull requests into UTC days.

    Opening counts on the creation day; closing and merging count on the day
    of that event, and merge latency is attributed to the merge day.
    """
    days: dict[date, PullRequestDay] = {}
    for pr in prs:
        days.setdefault(utc_day(pr.created_at), PullRequestDay()).opened += 1
        if pr.closed_at is not None:
            days.setdefault(utc_day(pr.closed_at), PullRequestDay()).closed += 1
        if pr.merged_at is not None:
            bucket = days.setdefault(utc_day(pr.merged_at), PullRequestDay())
            bucket.merged += 1
            bucket.merge_hours_total += _hours_between(pr.created_at, pr.merged_at)
            bucket.merge_count += 1
    return days


def bucket_issues(issues: Iterable[IssueEvent]) -> dict[date, IssueDay]:
    """Re-bucket issues into UTC days; resolution time lands on the close day."""
    days: dict[date, IssueDay] = {}
    for issue in issues:
        days.setdefault(utc_day(issue.created_at), IssueDay()).opened += 1
        if issue.closed_at is not None:
            bucket = days.setdefault(utc_day(issue.closed_at), IssueDay())
            bucket.closed += 1
            bucket.resolution_hours_total += _hours_between(issue.created_at, issue.closed_at)
            bucket.resolution_count += 1
    return days


class FlowClient(Protocol):
    async def get_contributor_stats(self, owner: str, repo: str) -> Optional[list[ContributorStats]]: ...

    async def list_pull_requests(self, owner: str, repo: str, *, per_page: int = ..., page: int = ...) -> list[PullRequestEvent]: ...

    async def list_issues(self, owner: str, repo: str, *, per_page: int = ..., page: int = ...) -> tuple[list[IssueEvent], int]: ...


class FlowRepository(Protocol):
    """Storage interface for sampled repositories and their flow rows."""

    def upsert_repo(self, hit: SearchRepoHit, language: str) -> tuple[int, str]: ...

    def increment_commit_week(self, repo_id: int, language: str, week: date, totals: WeekTotals) -> None: ...

    def replace_pr_day(self, repo_id: int, language: str, day: date, bucket: PullRequestDay) -> None: ...

    def replace_issue_day(self, repo_id: int, language: str, day: date, bucket: IssueDay) -> None: ...

    def rollback(self) -> None: ...


class SQLAlchemyFlowRepository:
    """SQLAlchemy-backed repository for sampled_repos and the flow metric tables."""

    def __init__(self, session: Any) -> None:
        self._session = session

    def upsert_repo(self, hit: SearchRepoHit, language: str) -> tuple[int, str]:
        """Insert or refresh a repository; returns its id and the language its rows are keyed by."""
        now = utcnow()
        repo = self._session.query(SampledRepo).filter(SampledRepo.github_id == hit.id).one_or_none()
        if repo is None:
            repo = SampledRepo(
                github_id=hit.id,
                full_name=hit.full_name,
                owner=hit.owner_login or hit.full_name.split("/")[0],
                name=hit.name,
                description=hit.description,
                primary_language=language,
                stars=hit.stars,
                forks=hit.forks,
                open_issues=hit.open_issues,
                last_synced_at=now,
            )
            self._session.add(repo)
        else:
            repo.stars = hit.stars
            repo.forks = hit.forks
            repo.open_issues = hit.open_issues
            repo.last_synced_at = now
        self._session.commit()
        return int(repo.id), repo.primary_language

    def increment_commit_week(self, repo_id: int, language: str, week: date, totals: WeekTotals) -> None:
        # user_id is NULL on repo-level rows, so the unique constraint cannot arbitrate.
        row = (
            self._session.query(CommitMetrics)
            .filter(
                CommitMetrics.date == week,
                CommitMetrics.repo_id == repo_id,
                CommitMetrics.language == language,
                CommitMetrics.user_id.is_(None),
            )
            .one_or_none()
        )
        if row is None:
            self._session.add(
                CommitMetrics(
                    date=week,
                    repo_id=repo_id,
                    language=language,
                    commit_count=totals.commits,
                    lines_added=totals.added,
                    lines_removed=totals.removed,
                )
            )
        else:
            row.commit_count += totals.commits
            row.lines_added += totals.added
            row.lines_removed += totals.removed
        self._session.commit()

    def replace_pr_day(self, repo_id: int, language: str, day: date, bucket: PullRequestDay) -> None:
        row = (
            self._session.query(PullRequestMetrics)
            .filter(
                PullRequestMetrics.date == day,
                PullRequestMetrics.repo_id == repo_id,
                PullRequestMetrics.language == language,
                PullRequestMetrics.user_id.is_(None),
            )
            .one_or_none()
        )
        if row is None:
            row = PullRequestMetrics(date=day, repo_id=repo_id, language=language)
            self._session.add(row)
        row.prs_opened = bucket.opened
        row.prs_closed = bucket.closed
        row.prs_merged = bucket.merged
        row.avg_time_to_merge_hrs = bucket.avg_time_to_merge_hrs
        self._session.commit()

    def replace_issue_day(self, repo_id: int, language: str, day: date, bucket: IssueDay) -> None:
        row = (
            self._session.query(IssueMetrics)
            .filter(
                IssueMetrics.date == day,
                IssueMetrics.repo_id == repo_id,
                IssueMetrics.language == language,
            )
            .one_or_none()
        )
        if row is None:
            row = IssueMetrics(date=day, repo_id=repo_id, language=language)
            self._session.add(row)
        row.issues_opened = bucket.opened
        row.issues_closed = bucket.closed
        row.avg_resolution_hrs = bucket.avg_resolution_hrs
        self._session.commit()

    def rollback(self) -> None:
        self._session.rollback()


class FlowStage:
    """Collects flow metrics for one repository at a time with per-source isolation."""

    def __init__(
        self,
        *,
        client: FlowClient,
        repository: FlowRepository,
        pr_pages: int = 3,
        issue_pages: int = 3,
        per_page: int = 100,
    ) -> None:
        self._client = client
        self._repository = repository
        self._pr_pages = pr_pages
        self._issue_pages = issue_pages
        self._per_page = per_page

    async def run(self, repos: Sequence[tuple[SearchRepoHit, str]]) -> FlowStageStats:
        stats = FlowStageStats()
        for hit, language in repos:
            if not hit.owner_login:
                continue
            try:
                await self.sync_repo(hit, language, stats)
            except Exception as exc:
                self._repository.rollback()
                stats.errors.append(f"{hit.full_name}: {exc}")
                logger.warning(
                    "Repository sync failed",
                    extra=sanitize_log_extra(repo=hit.full_name, error=str(exc)),
                )
        return stats

    async def sync_repo(self, hit: SearchRepoHit, language: str, stats: FlowStageStats) -> int:
        # Rows are keyed by the stored primary language.
        repo_id, row_language = self._repository.upsert_repo(hit, language)
        stats.repos += 1
        owner, name = hit.owner_login or "", hit.name

        try:
            contributors = await self._client.get_contributor_stats(owner, name)
            if contributors is None:
                stats.stats_pending += 1
            else:
                for week, totals in aggregate_contributor_weeks(contributors).items():
                    self._repository.increment_commit_week(repo_id, row_language, week, totals)
                    stats.commit_weeks += 1
        except Exception as exc:
            self._repository.rollback()
            logger.info(
                "Contributor statistics unavailable",
                extra=sanitize_log_extra(repo=hit.full_name, error=str(exc)),
            )

        try:
            prs = await self.fetch_pull_requests(owner, name)
            for day, bucket in bucket_pull_requests(prs).items():
                self._repository.replace_pr_day(repo_id, row_language, day, bucket)
                stats.pr_days += 1
        except Exception as exc:
            self._repository.rollback()
            stats.errors.append(f"{hit.full_name} pulls: {exc}")
            logger.warning(
                "Pull request sync failed",
                extra=sanitize_log_extra(repo=hit.full_name, error=str(exc)),
            )

        try:
            issues = await self.fetch_issues(owner, name)
            for day, bucket in bucket_issues(issues).items():
                self._repository.replace_issue_day(repo_id, row_language, day, bucket)
                stats.issue_days += 1
        except Exception as exc:
            self._repository.rollback()
            stats.errors.append(f"{hit.full_name} issues: {exc}")
            logger.warning(
                "Issue sync failed",
                extra=sanitize_log_extra(repo=hit.full_name, error=str(exc)),
            )

        return repo_id

    async def fetch_pull_requests(self, owner: str, repo: str) -> list[PullRequestEvent]:
        collected: list[PullRequestEvent] = []
        for page in range(1, self._pr_pages + 1):
            batch = await self._client.list_pull_requests(owner, repo, per_page=self._per_page, page=page)
            collected.extend(batch)
            if len(batch) < self._per_page:
                break
        return collected

    async def fetch_issues(self, owner: str, repo: str) -> list[IssueEvent]:
        collected: list[IssueEvent] = []
        for page in range(1, self._issue_pages + 1):
            batch, raw_count = await self._client.list_issues(owner, repo, per_page=self._per_page, page=page)
            collected.extend(batch)
            if raw_count < self._per_page:
                break
        return collected
