"""Typed contracts for GitHub client responses.

Upstream payloads are converted at the client boundary; nothing past the client
handles raw JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Mapping, Optional

from devpanel.utils.helpers import parse_github_datetime

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class GitHubRequestError(Exception):
    """Failed upstream call; ``status_code`` is None for non-HTTP failures."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        if retryable is None:
            retryable = status_code in RETRYABLE_STATUS_CODES
        self.retryable = retryable

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


def _int(payload: Mapping[str, Any], key: str) -> int:
    try:
        return int(payload.get(key) or 0)
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True, slots=True)
class SearchUserHit:
    """One item of a ``/search/users`` page."""

    id: int
    login: str
    avatar_url: Optional[str] = None
    html_url: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SearchUserHit":
        return cls(
            id=int(payload["id"]),
            login=str(payload["login"]),
            avatar_url=payload.get("avatar_url"),
            html_url=payload.get("html_url"),
        )


@dataclass(frozen=True, slots=True)
class UserProfile:
    """Subset of ``/users/{login}`` used for cohort gating."""

    id: int
    login: str
    account_type: str
    followers: int
    public_repos: int

    @property
    def is_organization(self) -> bool:
        return self.account_type != "User"

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "UserProfile":
        return cls(
            id=int(payload["id"]),
            login=str(payload["login"]),
            account_type=str(payload.get("type") or ""),
            followers=_int(payload, "followers"),
            public_repos=_int(payload, "public_repos"),
        )


@dataclass(frozen=True, slots=True)
class SearchRepoHit:
    """One item of a ``/search/repositories`` page."""

    id: int
    full_name: str
    name: str
    owner_login: Optional[str]
    description: Optional[str]
    stars: int
    forks: int
    open_issues: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SearchRepoHit":
        owner = payload.get("owner") if isinstance(payload.get("owner"), dict) else {}
        full_name = str(payload.get("full_name") or "")
        return cls(
            id=int(payload["id"]),
            full_name=full_name,
            name=str(payload.get("name") or full_name.split("/")[-1]),
            owner_login=owner.get("login"),
            description=payload.get("description"),
            stars=_int(payload, "stargazers_count"),
            forks=_int(payload, "forks_count"),
            open_issues=_int(payload, "open_issues_count"),
        )


@dataclass(frozen=True, slots=True)
class ContributorWeek:
    """Weekly bucket from ``/stats/contributors``; ``week_start`` is epoch seconds."""

    week_start: int
    additions: int
    deletions: int
    commits: int


@dataclass(frozen=True, slots=True)
class ContributorStats:
    author_login: Optional[str]
    total: int
    weeks: tuple[ContributorWeek, ...] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ContributorStats":
        author = payload.get("author") if isinstance(payload.get("author"), dict) else None
        weeks = tuple(
            ContributorWeek(
                week_start=_int(week, "w"),
                additions=_int(week, "a"),
                deletions=_int(week, "d"),
                commits=_int(week, "c"),
            )
            for week in payload.get("weeks") or []
            if isinstance(week, dict)
        )
        return cls(
            author_login=author.get("login") if author else None,
            total=_int(payload, "total"),
            weeks=weeks,
        )


@dataclass(frozen=True, slots=True)
class ContributionDay:
    date: date
    count: int


@dataclass(frozen=True, slots=True)
class ContributionCalendar:
    """One year (at most) of the GraphQL contribution calendar, flattened to days."""

    total: int
    days: tuple[ContributionDay, ...] = field(default_factory=tuple)

    def active_days(self) -> list[ContributionDay]:
        return [day for day in self.days if day.count > 0]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ContributionCalendar":
        calendar = payload.get("contributionCalendar") or {}
        days: list[ContributionDay] = []
        for week in calendar.get("weeks") or []:
            for day in week.get("contributionDays") or []:
                raw_date = str(day.get("date") or "")[:10]
                if not raw_date:
                    continue
                days.append(
                    ContributionDay(
                        date=date.fromisoformat(raw_date),
                        count=_int(day, "contributionCount"),
                    )
                )
        return cls(total=_int(calendar, "totalContributions"), days=tuple(days))


@dataclass(frozen=True, slots=True)
class PullRequestEvent:
    created_at: datetime
    closed_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    title: str = ""
    body: str = ""
    author_login: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Optional["PullRequestEvent"]:
        created_at = parse_github_datetime(payload.get("created_at"))
        if created_at is None:
            return None
        user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
        return cls(
            created_at=created_at,
            closed_at=parse_github_datetime(payload.get("closed_at")),
            merged_at=parse_github_datetime(payload.get("merged_at")),
            title=str(payload.get("title") or ""),
            body=str(payload.get("body") or ""),
            author_login=user.get("login"),
        )


@dataclass(frozen=True, slots=True)
class IssueEvent:
    created_at: datetime
    closed_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> Optional["IssueEvent"]:
        # The issues endpoint also lists pull requests.
        if payload.get("pull_request"):
            return None
        created_at = parse_github_datetime(payload.get("created_at"))
        if created_at is None:
            return None
        return cls(created_at=created_at, closed_at=parse_github_datetime(payload.get("closed_at")))
