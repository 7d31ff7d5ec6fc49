"""Panel and findings aggregation over persisted cohort rows."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import case, func, literal_column

from devpanel.models.ai_signal import AISignal
from devpanel.models.flow_metrics import CommitMetrics, IssueMetrics, PullRequestMetrics
from devpanel.models.sampled_repo import SampledRepo
from devpanel.models.sampled_user import SampledUser
from devpanel.models.sync_job import SyncJob, SyncJobStatus, SyncJobType
from devpanel.models.user_contribution_daily import UserContributionDaily
from devpanel.services.panel_stats import (
    DEFAULT_PANEL_START,
    POST_PERIOD_START,
    PRE_PERIOD,
    PanelInputError,
    PeriodBounds,
    activity_rates,
    days_in_month,
    end_of_last_full_month,
    last_full_month,
    month_key,
    month_range,
    per_user_deltas,
    period_bounds,
    period_stats,
    ratio,
    summarize_deltas,
    zero_padded_quantiles,
)

logger = logging.getLogger(__name__)

Daily = UserContributionDaily


def month_bucket(column: Any, dialect_name: str) -> Any:
    """``YYYY-MM`` key of a date column; the format is inlined so GROUP BY matches the select list."""
    if dialect_name == "postgresql":
        return func.to_char(column, literal_column("'YYYY-MM'"))
    return func.strftime(literal_column("'%Y-%m'"), column)


def _coerce_date(value: Any, name: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as exc:
        raise PanelInputError(f"Invalid {name} date: {value!r}") from exc


class PanelQueries:
    """Grouped aggregates over the daily contribution table and the flow tables."""

    def __init__(self, session: Any) -> None:
        self._session = session
        self._month = month_bucket(Daily.date, session.get_bind().dialect.name)

    def tier_counts(self) -> dict[str, int]:
        rows = self._session.query(SampledUser.tier, func.count(SampledUser.id)).group_by(SampledUser.tier).all()
        return {tier: int(count) for tier, count in rows}

    def repo_count(self) -> int:
        return int(self._session.query(func.count(SampledRepo.id)).scalar() or 0)

    def monthly_totals(self, start: date, end: date) -> dict[str, tuple[int, int]]:
        """Month -> (sum of contributions, stored user-day rows)."""
        rows = (
            self._session.query(self._month, func.sum(Daily.contribution_count), func.count(Daily.id))
            .filter(Daily.date >= start, Daily.date <= end)
            .group_by(self._month)
            .all()
        )
        return {month: (int(total or 0), int(active or 0)) for month, total, active in rows}

    def monthly_tier_totals(self, start: date, end: date) -> dict[tuple[str, str], tuple[int, int]]:
        rows = (
            self._session.query(
                self._month,
                SampledUser.tier,
                func.sum(Daily.contribution_count),
                func.count(Daily.id),
            )
            .join(SampledUser, SampledUser.id == Daily.user_id)
            .filter(Daily.date >= start, Daily.date <= end)
            .group_by(self._month, SampledUser.tier)
            .all()
        )
        return {(month, tier): (int(total or 0), int(active or 0)) for month, tier, total, active in rows}

    def user_month_totals(self, start: date, end: date) -> list[tuple[str, int, str, int]]:
        """(month, user_id, tier, total) for every user with at least one active day that month."""
        rows = (
            self._session.query(
                self._month,
                Daily.user_id,
                SampledUser.tier,
                func.sum(Daily.contribution_count),
            )
            .join(SampledUser, SampledUser.id == Daily.user_id)
            .filter(Daily.date >= start, Daily.date <= end)
            .group_by(self._month, Daily.user_id, SampledUser.tier)
            .all()
        )
        return [(month, int(user_id), tier, int(total or 0)) for month, user_id, tier, total in rows]

    def period_totals(self, bounds: PeriodBounds) -> tuple[int, int]:
        total, active = (
            self._session.query(func.sum(Daily.contribution_count), func.count(Daily.id))
            .filter(Daily.date >= bounds.start, Daily.date <= bounds.end)
            .one()
        )
        return int(total or 0), int(active or 0)

    def period_tier_totals(self, bounds: PeriodBounds) -> dict[str, tuple[int, int]]:
        rows = (
            self._session.query(SampledUser.tier, func.sum(Daily.contribution_count), func.count(Daily.id))
            .join(SampledUser, SampledUser.id == Daily.user_id)
            .filter(Daily.date >= bounds.start, Daily.date <= bounds.end)
            .group_by(SampledUser.tier)
            .all()
        )
        return {tier: (int(total or 0), int(active or 0)) for tier, total, active in rows}

    def per_user_period_totals(self, pre: PeriodBounds, post: PeriodBounds) -> list[tuple[int, int]]:
        """(pre_total, post_total) for each user with any row between pre.start and post.end."""
        pre_total = func.sum(
            case((Daily.date.between(pre.start, pre.end), Daily.contribution_count), else_=0)
        )
        post_total = func.sum(
            case((Daily.date.between(post.start, post.end), Daily.contribution_count), else_=0)
        )
        rows = (
            self._session.query(Daily.user_id, pre_total, post_total)
            .filter(Daily.date >= pre.start, Daily.date <= post.end)
            .group_by(Daily.user_id)
            .order_by(Daily.user_id)
            .all()
        )
        return [(int(pre or 0), int(post or 0)) for _, pre, post in rows]

    def commit_rows(self, start: date, end: date) -> list[CommitMetrics]:
        return (
            self._session.query(CommitMetrics)
            .filter(CommitMetrics.date >= start, CommitMetrics.date <= end)
            .order_by(CommitMetrics.date.asc())
            .all()
        )

    def pr_rows(self, start: date, end: date) -> list[PullRequestMetrics]:
        return (
            self._session.query(PullRequestMetrics)
            .filter(PullRequestMetrics.date >= start, PullRequestMetrics.date <= end)
            .order_by(PullRequestMetrics.date.asc())
            .all()
        )

    def issue_rows(self, start: date, end: date) -> list[IssueMetrics]:
        return (
            self._session.query(IssueMetrics)
            .filter(IssueMetrics.date >= start, IssueMetrics.date <= end)
            .order_by(IssueMetrics.date.asc())
            .all()
        )

    def last_completed_job(self, job_type: SyncJobType) -> Optional[SyncJob]:
        return (
            self._session.query(SyncJob)
            .filter(SyncJob.job_type == job_type.value, SyncJob.status == SyncJobStatus.COMPLETED.value)
            .order_by(SyncJob.created_at.desc(), SyncJob.id.desc())
            .first()
        )

    def adoption_summary(self) -> dict[str, int]:
        return {
            "users_with_ai": self._session.query(SampledUser).filter(SampledUser.ai_adoption_score > 0).count(),
            "repos_with_ai": self._session.query(SampledRepo).filter(SampledRepo.ai_adoption_score > 0).count(),
            "total_signals": self._session.query(AISignal).count(),
        }


def _monthly_weighted(rows: list[Any], weight_attr: str, value_attr: str) -> list[dict[str, Any]]:
    buckets: dict[str, list[float]] = defaultdict(lambda: [0.0, 0.0])
    for row in rows:
        weight = getattr(row, weight_attr) or 0
        bucket = buckets[month_key(row.date)]
        bucket[0] += weight
        bucket[1] += (getattr(row, value_attr) or 0) * weight
    return [
        {"date": f"{month}-01", "value": ratio(weighted, weight)}
        for month, (weight, weighted) in sorted(buckets.items())
    ]


def repo_flow_series(
    commits: list[CommitMetrics],
    prs: list[PullRequestMetrics],
    issues: list[IssueMetrics],
) -> dict[str, list[dict[str, Any]]]:
    """Monthly lines per commit, merge-weighted merge hours and close-weighted resolution hours."""
    lines: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for row in commits:
        bucket = lines[month_key(row.date)]
        bucket[0] += row.commit_count
        bucket[1] += row.lines_added + row.lines_removed
    return {
        "lines_per_commit": [
            {"date": f"{month}-01", "value": ratio(changed, commit_count)}
            for month, (commit_count, changed) in sorted(lines.items())
        ],
        "pr_merge_time": _monthly_weighted(prs, "prs_merged", "avg_time_to_merge_hrs"),
        "issue_resolution": _monthly_weighted(issues, "issues_closed", "avg_resolution_hrs"),
    }


def _empty_panel() -> dict[str, Any]:
    return {
        "summary": {
            "total_contributions": 0,
            "avg_contributions_per_user_per_day": 0.0,
            "total_lines_added": 0,
            "total_lines_removed": 0,
            "avg_lines_per_commit": 0.0,
            "total_prs_opened": 0,
            "total_prs_merged": 0,
            "avg_time_to_merge_hours": None,
            "total_issues_opened": 0,
            "total_issues_closed": 0,
            "avg_resolution_hours": None,
            "active_users": 0,
            "active_repos": 0,
            "period_start": "",
            "period_end": "",
        },
        "trends": {
            "contributions": [],
            "active_day_share": [],
            "contributions_per_active_day": [],
            "lines_per_commit": [],
            "pr_merge_time": [],
            "issue_resolution": [],
        },
        "message": "No data collected yet; run a cohort sync first.",
    }


def build_panel_metrics(
    session: Any,
    start: date | str | None = None,
    end: date | str | None = None,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Monthly panel series between ``start`` and ``end`` (inclusive).

    Defaults cover 2020-01-01 through the end of the last full month. Every
    rate divides by the full cohort (or tier) size, so days without a stored
    row count as zero activity.
    """
    start_day = _coerce_date(start, "start") or DEFAULT_PANEL_START
    end_day = _coerce_date(end, "end") or end_of_last_full_month(now)
    if start_day > end_day:
        raise PanelInputError(f"Start date {start_day} is after end date {end_day}")

    queries = PanelQueries(session)
    monthly = queries.monthly_totals(start_day, end_day)
    commits = queries.commit_rows(start_day, end_day)
    prs = queries.pr_rows(start_day, end_day)
    issues = queries.issue_rows(start_day, end_day)
    if not monthly and not commits and not prs and not issues:
        return _empty_panel()

    tier_counts = queries.tier_counts()
    user_count = sum(tier_counts.values())
    repo_count = queries.repo_count()
    monthly_tier = queries.monthly_tier_totals(start_day, end_day)
    user_months = queries.user_month_totals(start_day, end_day)

    months = month_range(month_key(start_day), month_key(end_day))
    days_by_month = {month: days_in_month(month) for month in months}

    active_values: dict[str, list[float]] = defaultdict(list)
    active_values_by_tier: dict[tuple[str, str], list[float]] = defaultdict(list)
    for month, _user_id, tier, total in user_months:
        value = ratio(total, days_by_month.get(month, 0))
        active_values[month].append(value)
        active_values_by_tier[(month, tier)].append(value)

    contributions: list[dict[str, Any]] = []
    active_share: list[dict[str, Any]] = []
    per_active_day: list[dict[str, Any]] = []
    for month in months:
        days = days_by_month[month]
        total, active = monthly.get(month, (0, 0))
        overall = activity_rates(total, active, user_count, days)
        point: dict[str, Any] = {
            "date": f"{month}-01",
            "value": overall["contributions_per_user_per_day"],
            "by_tier": {},
            **zero_padded_quantiles(active_values.get(month, []), user_count),
            "by_tier_p25": {},
            "by_tier_p50": {},
            "by_tier_p75": {},
        }
        share_by_tier: dict[str, float] = {}
        intensity_by_tier: dict[str, float] = {}
        for tier, users in tier_counts.items():
            tier_total, tier_active = monthly_tier.get((month, tier), (0, 0))
            rates = activity_rates(tier_total, tier_active, users, days)
            point["by_tier"][tier] = rates["contributions_per_user_per_day"]
            quantiles = zero_padded_quantiles(active_values_by_tier.get((month, tier), []), users)
            point["by_tier_p25"][tier] = quantiles["p25"]
            point["by_tier_p50"][tier] = quantiles["p50"]
            point["by_tier_p75"][tier] = quantiles["p75"]
            share_by_tier[tier] = rates["active_day_share"]
            intensity_by_tier[tier] = rates["contributions_per_active_day"]

        contributions.append(point)
        active_share.append({"date": f"{month}-01", "value": overall["active_day_share"], "by_tier": share_by_tier})
        per_active_day.append(
            {"date": f"{month}-01", "value": overall["contributions_per_active_day"], "by_tier": intensity_by_tier}
        )

    flow = repo_flow_series(commits, prs, issues)
    total_commits = sum(row.commit_count for row in commits)
    lines_added = sum(row.lines_added for row in commits)
    lines_removed = sum(row.lines_removed for row in commits)
    prs_merged = sum(row.prs_merged for row in prs)
    issues_closed = sum(row.issues_closed for row in issues)
    merge_hours = sum((row.avg_time_to_merge_hrs or 0) * row.prs_merged for row in prs)
    resolution_hours = sum((row.avg_resolution_hrs or 0) * row.issues_closed for row in issues)

    primary_series = next((series for series in (contributions, *flow.values()) if series), [])

    summary = {
        "total_contributions": sum(total for total, _ in monthly.values()),
        "avg_contributions_per_user_per_day": ratio(sum(p["value"] for p in contributions), len(contributions)),
        "total_lines_added": lines_added,
        "total_lines_removed": lines_removed,
        "avg_lines_per_commit": ratio(lines_added + lines_removed, total_commits),
        "total_prs_opened": sum(row.prs_opened for row in prs),
        "total_prs_merged": prs_merged,
        "avg_time_to_merge_hours": merge_hours / prs_merged if prs_merged else None,
        "total_issues_opened": sum(row.issues_opened for row in issues),
        "total_issues_closed": issues_closed,
        "avg_resolution_hours": resolution_hours / issues_closed if issues_closed else None,
        "active_users": user_count,
        "active_repos": repo_count,
        "period_start": primary_series[0]["date"] if primary_series else "",
        "period_end": primary_series[-1]["date"] if primary_series else "",
    }

    return {
        "summary": summary,
        "trends": {
            "contributions": contributions,
            "active_day_share": active_share,
            "contributions_per_active_day": per_active_day,
            **flow,
        },
        "data_counts": {
            "user_contributions": len(user_months),
            "repo_commits": len(commits),
            "repo_pr_days": len(prs),
            "repo_issue_days": len(issues),
        },
    }


def _tier_period_stats(
    tier_totals: dict[str, tuple[int, int]],
    tier_counts: dict[str, int],
    days: int,
) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    for tier, (total, active) in tier_totals.items():
        users = tier_counts.get(tier, 0)
        out[tier] = {"users": users, **period_stats(total, active, days, users)}
    return out


def _load_params(job: Optional[SyncJob]) -> Any:
    if job is None or not job.sampling_params:
        return None
    try:
        return json.loads(job.sampling_params)
    except ValueError:
        logger.warning("Unreadable sampling params on sync job", extra={"job_id": job.id})
        return None


def build_findings(session: Any, *, now: datetime | None = None) -> dict[str, Any]:
    """
    Fixed pre/post comparison of daily contribution rates.

    The pre period is 2020-01..2021-12; the post period runs from 2022-01
    through the last full month. The per-user delta distribution covers
    users with any stored row in either window, without zero padding.
    """
    pre = period_bounds(*PRE_PERIOD)
    post = period_bounds(POST_PERIOD_START, last_full_month(now))

    queries = PanelQueries(session)
    tier_counts = queries.tier_counts()
    user_count = sum(tier_counts.values())

    pre_total, pre_active = queries.period_totals(pre)
    post_total, post_active = queries.period_totals(post)
    deltas = per_user_deltas(queries.per_user_period_totals(pre, post), pre.days, post.days)

    last_user_job = queries.last_completed_job(SyncJobType.USERS) or queries.last_completed_job(SyncJobType.ALL)
    last_repo_job = queries.last_completed_job(SyncJobType.REPOS) or queries.last_completed_job(SyncJobType.ALL)

    return {
        "cohort": {
            "users": user_count,
            "repos": queries.repo_count(),
            "tiers": tier_counts,
            "last_user_sync_at": last_user_job.completed_at.isoformat() if last_user_job and last_user_job.completed_at else None,
            "last_repo_sync_at": last_repo_job.completed_at.isoformat() if last_repo_job and last_repo_job.completed_at else None,
            "sampling_seed": last_user_job.sampling_seed if last_user_job else None,
            "sampling_params": _load_params(last_user_job),
        },
        "periods": {
            "pre": {
                "start_month": pre.start_month,
                "end_month": pre.end_month,
                **period_stats(pre_total, pre_active, pre.days, user_count),
            },
            "post": {
                "start_month": post.start_month,
                "end_month": post.end_month,
                **period_stats(post_total, post_active, post.days, user_count),
            },
        },
        "tiers": {
            "pre": _tier_period_stats(queries.period_tier_totals(pre), tier_counts, pre.days),
            "post": _tier_period_stats(queries.period_tier_totals(post), tier_counts, post.days),
        },
        "distribution": {"delta_contributions_per_user_per_day": summarize_deltas(deltas)},
        "adoption": queries.adoption_summary(),
    }
