"""Cohort sync orchestrator: job lifecycle, lease and stage sequencing."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from devpanel.config.database import SessionLocal
from devpanel.config.settings import settings
from devpanel.crawlers.github.adoption_stage import AdoptionStage, SQLAlchemyAdoptionRepository
from devpanel.crawlers.github.cache import ResponseCache, SQLAlchemyResponseCache
from devpanel.crawlers.github.client import GitHubClient
from devpanel.crawlers.github.contracts import SearchRepoHit
from devpanel.crawlers.github.contributions_stage import ContributionStage, SQLAlchemyContributionRepository
from devpanel.crawlers.github.flow_stage import FlowStage, SQLAlchemyFlowRepository
from devpanel.crawlers.github.rate_limiter import GitHubRateLimiter, QuotaChannel
from devpanel.models.sampled_repo import SampledRepo
from devpanel.models.sampled_user import SampledUser
from devpanel.models.sync_job import SyncJob, SyncJobStatus, SyncJobType
from devpanel.services.sampler import (
    SEARCH_ORDERS,
    DeterministicSampler,
    FollowerBand,
    resolve_bands,
)
from devpanel.utils.helpers import clamp_int, sanitize_for_log, sanitize_log_extra, utcnow

logger = logging.getLogger(__name__)

TRACKED_LANGUAGES = (
    "TypeScript",
    "JavaScript",
    "Python",
    "Go",
    "Rust",
    "Java",
    "C++",
    "C#",
    "PHP",
    "Ruby",
)

# Cohorts each job type writes; jobs whose scopes intersect may not run together.
JOB_SCOPES: dict[SyncJobType, frozenset[str]] = {
    SyncJobType.USERS: frozenset({"users"}),
    SyncJobType.REPOS: frozenset({"repos"}),
    SyncJobType.ALL: frozenset({"users", "repos"}),
    SyncJobType.ADOPTION: frozenset({"adoption"}),
}


class SyncAlreadyRunningError(RuntimeError):
    """Raised when an overlapping sync job still holds its lease."""

    def __init__(self, job_id: int, job_type: str, started_at: Optional[datetime]) -> None:
        super().__init__(f"Sync job {job_id} ({job_type}) is already running since {started_at}")
        self.job_id = job_id
        self.job_type = job_type
        self.started_at = started_at


def _finite_or(value: Any, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


@dataclass(slots=True)
class SyncOptions:
    """Effective parameters of one sync invocation, already clamped."""

    seed: int = 42
    users_per_band: Optional[int] = None
    user_per_page: int = 100
    user_pages_per_order: int = 2
    baseline_years: tuple[int, ...] = (2020, 2021)
    contribution_years: tuple[int, ...] = (2020, 2021, 2022, 2023, 2024, 2025)
    baseline_min_contributions: int = 50
    repo_language_count: int = 5
    repos_per_language: int = 10
    repo_min_stars: int = 5000
    repo_pr_pages: int = 3
    repo_issue_pages: int = 3
    adoption_pr_pages: int = 2
    adoption_pr_per_page: int = 50
    contribution_chunk_size: int = 200
    graphql_throttle_ms: int = 800
    request_timeout_seconds: float = 30.0
    retry_max_attempts: int = 3
    retry_backoff_base_seconds: float = 1.0
    retry_backoff_max_seconds: float = 30.0
    bands: list[FollowerBand] = field(default_factory=list)

    @classmethod
    def from_settings(cls, **overrides: Any) -> "SyncOptions":
        """Settings defaults with per-invocation overrides; None overrides are ignored."""
        values: dict[str, Any] = {
            "seed": settings.SAMPLING_SEED,
            "users_per_band": settings.USERS_PER_BAND,
            "user_per_page": settings.USER_SEARCH_PER_PAGE,
            "user_pages_per_order": settings.USER_SEARCH_PAGES_PER_ORDER,
            "baseline_years": tuple(settings.BASELINE_YEARS),
            "contribution_years": tuple(settings.CONTRIBUTION_YEARS),
            "baseline_min_contributions": settings.BASELINE_MIN_CONTRIBUTIONS,
            "repo_language_count": settings.REPO_LANGUAGE_COUNT,
            "repos_per_language": settings.REPOS_PER_LANGUAGE,
            "repo_min_stars": settings.REPO_MIN_STARS,
            "repo_pr_pages": settings.REPO_PR_PAGES,
            "repo_issue_pages": settings.REPO_ISSUE_PAGES,
            "adoption_pr_pages": settings.ADOPTION_PR_PAGES,
            "adoption_pr_per_page": settings.ADOPTION_PR_PER_PAGE,
            "contribution_chunk_size": settings.CONTRIBUTION_CHUNK_SIZE,
            "graphql_throttle_ms": settings.GRAPHQL_THROTTLE_MS,
            "request_timeout_seconds": settings.REQUEST_TIMEOUT_SECONDS,
            "retry_max_attempts": settings.RETRY_MAX_ATTEMPTS,
            "retry_backoff_base_seconds": settings.RETRY_BACKOFF_BASE_SECONDS,
            "retry_backoff_max_seconds": settings.RETRY_BACKOFF_MAX_SECONDS,
        }
        unknown = set(overrides) - set(values)
        if unknown:
            raise TypeError(f"Unknown sync options: {', '.join(sorted(unknown))}")
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values).normalized()

    def normalized(self) -> "SyncOptions":
        users_per_band = self.users_per_band
        if users_per_band is not None:
            number = _finite_or(users_per_band, math.nan)
            users_per_band = int(number) if math.isfinite(number) else None
        backoff_base = max(0.0, _finite_or(self.retry_backoff_base_seconds, settings.RETRY_BACKOFF_BASE_SECONDS))
        return replace(
            self,
            seed=int(_finite_or(self.seed, settings.SAMPLING_SEED)),
            users_per_band=users_per_band,
            user_per_page=clamp_int(self.user_per_page, 1, 100),
            user_pages_per_order=clamp_int(self.user_pages_per_order, 1, 10),
            baseline_years=tuple(int(year) for year in self.baseline_years),
            contribution_years=tuple(int(year) for year in self.contribution_years),
            repo_language_count=clamp_int(self.repo_language_count, 1, len(TRACKED_LANGUAGES)),
            repos_per_language=clamp_int(self.repos_per_language, 1, 1000),
            repo_min_stars=max(0, int(_finite_or(self.repo_min_stars, settings.REPO_MIN_STARS))),
            repo_pr_pages=clamp_int(self.repo_pr_pages, 0, 50),
            repo_issue_pages=clamp_int(self.repo_issue_pages, 0, 50),
            adoption_pr_pages=clamp_int(self.adoption_pr_pages, 0, 50),
            adoption_pr_per_page=clamp_int(self.adoption_pr_per_page, 1, 100),
            contribution_chunk_size=clamp_int(self.contribution_chunk_size, 1, 1000),
            graphql_throttle_ms=clamp_int(self.graphql_throttle_ms, 0, 60_000),
            request_timeout_seconds=max(1.0, _finite_or(self.request_timeout_seconds, settings.REQUEST_TIMEOUT_SECONDS)),
            retry_max_attempts=clamp_int(self.retry_max_attempts, 1, 10),
            retry_backoff_base_seconds=backoff_base,
            retry_backoff_max_seconds=max(
                backoff_base,
                _finite_or(self.retry_backoff_max_seconds, settings.RETRY_BACKOFF_MAX_SECONDS),
            ),
            bands=resolve_bands(users_per_band),
        )

    @property
    def languages(self) -> tuple[str, ...]:
        return TRACKED_LANGUAGES[: self.repo_language_count]

    def client_options(self) -> dict[str, Any]:
        """Request policy keyword arguments for the GitHub client."""
        return {
            "graphql_throttle_seconds": self.graphql_throttle_ms / 1000.0,
            "timeout_seconds": self.request_timeout_seconds,
            "max_attempts": self.retry_max_attempts,
            "backoff_base_seconds": self.retry_backoff_base_seconds,
            "backoff_max_seconds": self.retry_backoff_max_seconds,
        }

    def sampling_params(self, job_type: SyncJobType) -> Optional[dict[str, Any]]:
        """Snapshot recorded on the job so the cohort can be rebuilt from it and the seed."""
        sync_users = job_type in (SyncJobType.USERS, SyncJobType.ALL)
        sync_repos = job_type in (SyncJobType.REPOS, SyncJobType.ALL)
        request = {
            "graphqlThrottleMs": self.graphql_throttle_ms,
            "timeoutSeconds": self.request_timeout_seconds,
            "maxAttempts": self.retry_max_attempts,
            "backoffBaseSeconds": self.retry_backoff_base_seconds,
            "backoffMaxSeconds": self.retry_backoff_max_seconds,
        }
        if job_type == SyncJobType.ADOPTION:
            return {
                "adoption": {"prPages": self.adoption_pr_pages, "perPage": self.adoption_pr_per_page},
                "request": request,
            }
        return {
            "users": {
                "baselineYears": list(self.baseline_years),
                "contributionYears": list(self.contribution_years),
                "baselineMinContributions": self.baseline_min_contributions,
                "chunkSize": self.contribution_chunk_size,
                "bands": [band.to_dict() for band in self.bands],
                "usersPerBand": self.users_per_band,
                "perPage": self.user_per_page,
                "pagesPerOrder": self.user_pages_per_order,
                "orders": list(SEARCH_ORDERS),
            }
            if sync_users
            else None,
            "repos": {
                "languages": list(self.languages),
                "reposPerLanguage": self.repos_per_language,
                "minStars": self.repo_min_stars,
                "prPages": self.repo_pr_pages,
                "issuePages": self.repo_issue_pages,
            }
            if sync_repos
            else None,
            "request": request,
        }


async def fetch_repos_for_language(
    client: Any,
    language: str,
    *,
    min_stars: int,
    target: int,
) -> list[SearchRepoHit]:
    """Star-ordered repositories for one language, paged until ``target`` or exhaustion."""
    per_page = clamp_int(min(100, target), 1, 100)
    pages = clamp_int(math.ceil(target / per_page), 1, 10)
    collected: list[SearchRepoHit] = []
    for page in range(1, pages + 1):
        batch = await client.search_repos(language, min_stars=min_stars, per_page=per_page, page=page)
        collected.extend(batch)
        if len(batch) < per_page:
            break

    by_id: dict[int, SearchRepoHit] = {}
    for hit in collected:
        by_id[hit.id] = hit
    return list(by_id.values())[:target]


def build_github_client(*, rate_limiter: GitHubRateLimiter | None = None, **kwargs: Any) -> GitHubClient:
    """Client wired to the shared governor and the database-backed response cache."""
    if kwargs.get("cache") is None:
        kwargs["cache"] = SQLAlchemyResponseCache(SessionLocal)
    return GitHubClient(rate_limiter=rate_limiter, **kwargs)


class CohortSyncOrchestrator:
    """Runs one audited sync job at a time per cohort scope."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any] = SessionLocal,
        github_client_factory: Callable[..., Any] = build_github_client,
        rate_limiter: GitHubRateLimiter | None = None,
        response_cache: ResponseCache | None = None,
        lease_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._github_client_factory = github_client_factory
        self.rate_limiter = rate_limiter or GitHubRateLimiter()
        self.response_cache = response_cache or SQLAlchemyResponseCache(session_factory)
        self._lease = timedelta(seconds=lease_seconds if lease_seconds is not None else settings.SYNC_LEASE_SECONDS)
        self._clock = clock

    async def run(self, job_type: SyncJobType | str = SyncJobType.ALL, options: SyncOptions | None = None) -> dict[str, Any]:
        job_type = SyncJobType(job_type)
        options = options or SyncOptions.from_settings()

        db = self._session_factory()
        try:
            job = self._start_job(db, job_type, options)
            run_stats: dict[str, Any] = {
                "job_id": job.id,
                "job_type": job_type.value,
                "items_processed": 0,
                "stages": {},
            }
            logger.info(
                "Cohort sync started",
                extra=sanitize_log_extra(job_id=job.id, job_type=job_type.value, seed=options.seed),
            )

            try:
                run_stats["cache_entries_purged"] = self.response_cache.purge_expired()
                async with self._github_client_factory(
                    rate_limiter=self.rate_limiter,
                    cache=self.response_cache,
                    **options.client_options(),
                ) as client:
                    if job_type in (SyncJobType.USERS, SyncJobType.ALL):
                        run_stats["stages"]["users"] = await self._sync_users(db, client, options)
                        run_stats["items_processed"] += run_stats["stages"]["users"]["admitted"]
                    if job_type in (SyncJobType.REPOS, SyncJobType.ALL):
                        run_stats["stages"]["repos"] = await self._sync_repos(db, client, options)
                        run_stats["items_processed"] += run_stats["stages"]["repos"]["repos"]
                    if job_type == SyncJobType.ADOPTION:
                        adoption = await self._sync_adoption(db, client, options)
                        run_stats["stages"]["adoption"] = adoption
                        run_stats["items_processed"] += adoption["repos_scanned"] + adoption["users_updated"]
                self._finish_job(db, job, SyncJobStatus.COMPLETED, run_stats["items_processed"])
            except Exception as exc:
                db.rollback()
                error = sanitize_for_log(str(exc) or type(exc).__name__, key="error")
                self._finish_job(db, job, SyncJobStatus.FAILED, run_stats["items_processed"], error=error)
                logger.exception(
                    "Cohort sync failed",
                    extra=sanitize_log_extra(job_id=job.id, job_type=job_type.value, error=error),
                )
                run_stats.update(success=False, error=error)
            else:
                run_stats["success"] = True
                logger.info(
                    "Cohort sync completed",
                    extra=sanitize_log_extra(job_id=job.id, items_processed=run_stats["items_processed"]),
                )

            run_stats["rate_limit_status"] = self.rate_limiter.status()
            return run_stats
        finally:
            db.close()

    def _start_job(self, db: Any, job_type: SyncJobType, options: SyncOptions) -> SyncJob:
        now = self._clock()
        scope = JOB_SCOPES[job_type]
        running = db.query(SyncJob).filter(SyncJob.status == SyncJobStatus.RUNNING.value).all()
        for other in running:
            other_scope = JOB_SCOPES.get(SyncJobType(other.job_type), frozenset())
            if not scope & other_scope:
                continue
            started = other.started_at or other.created_at
            if started is not None and now - started < self._lease:
                raise SyncAlreadyRunningError(other.id, other.job_type, started)
            other.status = SyncJobStatus.FAILED.value
            other.completed_at = now
            other.error_message = "Lease expired before the job reported completion"
            logger.warning(
                "Marked stale sync job as failed",
                extra=sanitize_log_extra(job_id=other.id, job_type=other.job_type),
            )

        params = options.sampling_params(job_type)
        syncs_users = job_type in (SyncJobType.USERS, SyncJobType.ALL)
        job = SyncJob(
            job_type=job_type.value,
            status=SyncJobStatus.RUNNING.value,
            started_at=now,
            sampling_seed=options.seed if syncs_users else None,
            sampling_params=json.dumps(params) if params is not None else None,
        )
        db.add(job)
        db.commit()
        return job

    def _finish_job(
        self,
        db: Any,
        job: SyncJob,
        status: SyncJobStatus,
        items_processed: int,
        *,
        error: str | None = None,
    ) -> None:
        job.status = status.value
        job.completed_at = self._clock()
        job.items_processed = items_processed
        job.error_message = error
        if status == SyncJobStatus.COMPLETED:
            job.rate_limit_remaining = self.rate_limiter.budget(QuotaChannel.CORE).remaining
        db.commit()

    async def _sync_users(self, db: Any, client: Any, options: SyncOptions) -> dict[str, Any]:
        sampler = DeterministicSampler(
            client,
            per_page=options.user_per_page,
            pages_per_order=options.user_pages_per_order,
        )
        stage = ContributionStage(
            client=client,
            repository=SQLAlchemyContributionRepository(db),
            baseline_years=options.baseline_years,
            contribution_years=options.contribution_years,
            baseline_min_contributions=options.baseline_min_contributions,
            chunk_size=options.contribution_chunk_size,
        )

        totals = {"bands": 0, "candidates": 0, "admitted": 0, "rejected": 0, "gated_out": 0, "failed": 0}
        async for band, candidates in sampler.iter_bands(options.bands, options.seed):
            band_stats = await stage.run([(hit, band.tier) for hit in candidates])
            totals["bands"] += 1
            totals["candidates"] += len(candidates)
            for key, value in asdict(band_stats).items():
                if key in totals:
                    totals[key] += value
        return totals

    async def _sync_repos(self, db: Any, client: Any, options: SyncOptions) -> dict[str, Any]:
        stage = FlowStage(
            client=client,
            repository=SQLAlchemyFlowRepository(db),
            pr_pages=options.repo_pr_pages,
            issue_pages=options.repo_issue_pages,
        )
        totals: dict[str, Any] = {"languages": 0, "repos": 0, "commit_weeks": 0, "pr_days": 0, "issue_days": 0, "errors": []}
        for language in options.languages:
            hits = await fetch_repos_for_language(
                client,
                language,
                min_stars=options.repo_min_stars,
                target=options.repos_per_language,
            )
            flow_stats = await stage.run([(hit, language) for hit in hits])
            totals["languages"] += 1
            totals["repos"] += flow_stats.repos
            totals["commit_weeks"] += flow_stats.commit_weeks
            totals["pr_days"] += flow_stats.pr_days
            totals["issue_days"] += flow_stats.issue_days
            totals["errors"].extend(sanitize_for_log(error) for error in flow_stats.errors)
        return totals

    async def _sync_adoption(self, db: Any, client: Any, options: SyncOptions) -> dict[str, Any]:
        stage = AdoptionStage(
            client=client,
            repository=SQLAlchemyAdoptionRepository(db),
            pr_pages=options.adoption_pr_pages,
            per_page=options.adoption_pr_per_page,
        )
        stats = await stage.run()
        return {
            "repos_scanned": stats.repos_scanned,
            "signals_recorded": stats.signals_recorded,
            "users_updated": stats.users_updated,
            "failed": stats.failed,
        }


def sync_status(db: Any, rate_limiter: GitHubRateLimiter) -> dict[str, Any]:
    """Last job, running flag, cohort sizes and live quota budgets."""
    last_job = db.query(SyncJob).order_by(SyncJob.created_at.desc(), SyncJob.id.desc()).first()
    running = db.query(SyncJob).filter(SyncJob.status == SyncJobStatus.RUNNING.value).first()
    return {
        "last_sync_at": last_job.completed_at.isoformat() if last_job and last_job.completed_at else None,
        "last_job": {
            "id": last_job.id,
            "job_type": last_job.job_type,
            "status": last_job.status,
            "items_processed": last_job.items_processed,
            "error_message": last_job.error_message,
        }
        if last_job
        else None,
        "is_running": running is not None,
        "users_tracked": db.query(SampledUser).count(),
        "repos_tracked": db.query(SampledRepo).count(),
        "rate_limit_status": rate_limiter.status(),
    }
