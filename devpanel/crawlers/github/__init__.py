"""GitHub crawler primitives: governor, governed executor, typed client."""

from devpanel.crawlers.github.cache import CacheTTL, InMemoryResponseCache, SQLAlchemyResponseCache
from devpanel.crawlers.github.client import GitHubClient
from devpanel.crawlers.github.contracts import (
    ContributionCalendar,
    ContributorStats,
    GitHubRequestError,
    IssueEvent,
    PullRequestEvent,
    SearchRepoHit,
    SearchUserHit,
    UserProfile,
)
from devpanel.crawlers.github.executor import RequestExecutor
from devpanel.crawlers.github.rate_limiter import GitHubRateLimiter, QuotaChannel

__all__ = [
    "CacheTTL",
    "ContributionCalendar",
    "ContributorStats",
    "GitHubClient",
    "GitHubRateLimiter",
    "GitHubRequestError",
    "InMemoryResponseCache",
    "IssueEvent",
    "PullRequestEvent",
    "QuotaChannel",
    "RequestExecutor",
    "SQLAlchemyResponseCache",
    "SearchRepoHit",
    "SearchUserHit",
    "UserProfile",
]
