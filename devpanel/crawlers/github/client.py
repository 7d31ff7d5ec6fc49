"""Async GitHub REST/GraphQL client; every call goes through the RequestExecutor."""

from __future__ import annotations

import base64
import logging
from datetime import datetime
from typing import Any, Literal, Optional

import httpx

from devpanel.config.settings import settings
from devpanel.crawlers.github.cache import CacheTTL, ResponseCache
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

logger = logging.getLogger(__name__)

SortOrder = Literal["asc", "desc"]
StateFilter = Literal["open", "closed", "all"]

CONTRIBUTIONS_QUERY = """
query($username: String!, $from: DateTime!, $to: DateTime!) {
  user(login: $username) {
    contributionsCollection(from: $from, to: $to) {
      totalCommitContributions
      totalPullRequestContributions
      totalPullRequestReviewContributions
      totalIssueContributions
      contributionCalendar {
        totalContributions
        weeks {
          contributionDays {
            contributionCount
            date
          }
        }
      }
    }
  }
}
"""


def _parse_search_items(response: httpx.Response) -> list[dict[str, Any]]:
    payload = response.json()
    items = payload.get("items") if isinstance(payload, dict) else None
    return [item for item in items or [] if isinstance(item, dict)]


def _parse_list(response: httpx.Response) -> list[dict[str, Any]]:
    payload = response.json()
    return [item for item in payload if isinstance(item, dict)] if isinstance(payload, list) else []


def _parse_contributor_stats(response: httpx.Response) -> Optional[list[dict[str, Any]]]:
    # 202 means GitHub is still computing the statistics.
    if response.status_code == 202 or not response.content:
        return None
    return _parse_list(response)


def _parse_contributions(response: httpx.Response) -> dict[str, Any]:
    payload = response.json()
    data = payload.get("data") if isinstance(payload, dict) else None
    user = (data or {}).get("user")
    if not user:
        errors = payload.get("errors") if isinstance(payload, dict) else None
        message = "; ".join(str(err.get("message")) for err in errors or [] if isinstance(err, dict))
        raise GitHubRequestError(message or "GraphQL response had no user", retryable=False)
    return user["contributionsCollection"]


def _parse_readme(response: httpx.Response) -> str:
    payload = response.json()
    content = payload.get("content") if isinstance(payload, dict) else None
    if not content:
        return ""
    return base64.b64decode(content).decode("utf-8", errors="replace")


def _parse_names(response: httpx.Response) -> list[str]:
    payload = response.json()
    if not isinstance(payload, list):
        return []
    return [str(item.get("name")) for item in payload if isinstance(item, dict) and item.get("name")]


class GitHubClient:
    """
    Typed access to the GitHub operations the cohort pipeline needs.

    The rate limiter and cache are injected so one governor can be shared by
    every collector in a process.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        executor: RequestExecutor | None = None,
        rate_limiter: GitHubRateLimiter | None = None,
        cache: ResponseCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        base_url: str | None = None,
        graphql_throttle_seconds: float | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
    ) -> None:
        token = token if token is not None else settings.GITHUB_TOKEN
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": settings.USER_AGENT,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if timeout_seconds is None:
            timeout_seconds = settings.REQUEST_TIMEOUT_SECONDS

        self._http = httpx.AsyncClient(
            base_url=base_url or settings.GITHUB_API_URL,
            headers=headers,
            transport=transport,
            timeout=timeout_seconds,
        )
        self.executor = executor or RequestExecutor(
            rate_limiter=rate_limiter or GitHubRateLimiter(),
            cache=cache,
            max_attempts=max_attempts if max_attempts is not None else settings.RETRY_MAX_ATTEMPTS,
            backoff_base_seconds=(
                backoff_base_seconds if backoff_base_seconds is not None else settings.RETRY_BACKOFF_BASE_SECONDS
            ),
            backoff_max_seconds=(
                backoff_max_seconds if backoff_max_seconds is not None else settings.RETRY_BACKOFF_MAX_SECONDS
            ),
            timeout_seconds=timeout_seconds,
        )
        if graphql_throttle_seconds is None:
            graphql_throttle_seconds = max(settings.GRAPHQL_THROTTLE_MS, 0) / 1000.0
        self._graphql_throttle = graphql_throttle_seconds

    @property
    def rate_limiter(self) -> GitHubRateLimiter:
        return self.executor.rate_limiter

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def rate_limit_status(self) -> dict[str, dict[str, Any]]:
        return self.rate_limiter.status()

    async def _get(
        self,
        path: str,
        *,
        channel: QuotaChannel,
        cache_key: str,
        ttl: CacheTTL,
        params: dict[str, Any] | None = None,
        parse=None,
    ) -> Any:
        async def call() -> httpx.Response:
            return await self._http.get(path, params=params)

        kwargs = {"parse": parse} if parse is not None else {}
        return await self.executor.execute(
            channel=channel,
            cache_key=cache_key,
            ttl_seconds=int(ttl),
            call=call,
            **kwargs,
        )

    # Search -----------------------------------------------------------------

    async def search_users(
        self,
        min_followers: int,
        max_followers: int | None,
        *,
        per_page: int = 30,
        page: int = 1,
        order: SortOrder = "desc",
    ) -> list[SearchUserHit]:
        if max_followers:
            query = f"followers:{min_followers}..{max_followers} type:user"
        else:
            query = f"followers:>={min_followers} type:user"
        cache_key = f"search:users:{min_followers}-{max_followers or 'plus'}:{per_page}:{page}:{order}"
        items = await self._get(
            "/search/users",
            channel=QuotaChannel.SEARCH,
            cache_key=cache_key,
            ttl=CacheTTL.SEARCH,
            params={"q": query, "sort": "followers", "order": order, "per_page": per_page, "page": page},
            parse=_parse_search_items,
        )
        return [SearchUserHit.from_payload(item) for item in items or []]

    async def search_repos(
        self,
        language: str,
        *,
        min_stars: int = 1000,
        per_page: int = 30,
        page: int = 1,
        order: SortOrder = "desc",
    ) -> list[SearchRepoHit]:
        cache_key = f"search:repos:{language}:{min_stars}:{per_page}:{page}:{order}"
        items = await self._get(
            "/search/repositories",
            channel=QuotaChannel.SEARCH,
            cache_key=cache_key,
            ttl=CacheTTL.SEARCH,
            params={
                "q": f"language:{language} stars:>={min_stars}",
                "sort": "stars",
                "order": order,
                "per_page": per_page,
                "page": page,
            },
            parse=_parse_search_items,
        )
        return [SearchRepoHit.from_payload(item) for item in items or []]

    # Profiles and repositories ----------------------------------------------

    async def get_user(self, username: str) -> UserProfile:
        payload = await self._get(
            f"/users/{username}",
            channel=QuotaChannel.CORE,
            cache_key=f"user:{username}",
            ttl=CacheTTL.PROFILE,
        )
        return UserProfile.from_payload(payload)

    async def get_repo(self, owner: str, repo: str) -> SearchRepoHit:
        payload = await self._get(
            f"/repos/{owner}/{repo}",
            channel=QuotaChannel.CORE,
            cache_key=f"repo:{owner}/{repo}",
            ttl=CacheTTL.REPO_STATS,
        )
        return SearchRepoHit.from_payload(payload)

    async def get_contributor_stats(self, owner: str, repo: str) -> Optional[list[ContributorStats]]:
        """Weekly contributor statistics, or None while GitHub is still computing them."""
        payload = await self._get(
            f"/repos/{owner}/{repo}/stats/contributors",
            channel=QuotaChannel.CORE,
            cache_key=f"stats:contributors:{owner}/{repo}",
            ttl=CacheTTL.REPO_STATS,
            parse=_parse_contributor_stats,
        )
        if payload is None:
            return None
        return [ContributorStats.from_payload(item) for item in payload]

    async def list_pull_requests(
        self,
        owner: str,
        repo: str,
        *,
        state: StateFilter = "all",
        per_page: int = 100,
        page: int = 1,
    ) -> list[PullRequestEvent]:
        items = await self._get(
            f"/repos/{owner}/{repo}/pulls",
            channel=QuotaChannel.CORE,
            cache_key=f"prs:{owner}/{repo}:{state}:{per_page}:{page}",
            ttl=CacheTTL.REPO_STATS,
            params={"state": state, "per_page": per_page, "page": page, "sort": "updated", "direction": "desc"},
            parse=_parse_list,
        )
        events = (PullRequestEvent.from_payload(item) for item in items or [])
        return [event for event in events if event is not None]

    async def list_issues(
        self,
        owner: str,
        repo: str,
        *,
        state: StateFilter = "all",
        per_page: int = 100,
        page: int = 1,
    ) -> tuple[list[IssueEvent], int]:
        """
        One page of issues with pull requests filtered out.

        Returns the issues together with the raw page length, which callers
        need to detect the last page.
        """
        items = await self._get(
            f"/repos/{owner}/{repo}/issues",
            channel=QuotaChannel.CORE,
            cache_key=f"issues:{owner}/{repo}:{state}:{per_page}:{page}",
            ttl=CacheTTL.REPO_STATS,
            params={"state": state, "per_page": per_page, "page": page, "sort": "updated", "direction": "desc"},
            parse=_parse_list,
        )
        items = items or []
        events = (IssueEvent.from_payload(item) for item in items)
        return [event for event in events if event is not None], len(items)

    async def get_readme(self, owner: str, repo: str) -> Optional[str]:
        """Decoded README text, or None when the repository has none."""
        try:
            return await self._get(
                f"/repos/{owner}/{repo}/readme",
                channel=QuotaChannel.CORE,
                cache_key=f"readme:{owner}/{repo}",
                ttl=CacheTTL.REPO_STATS,
                parse=_parse_readme,
            )
        except GitHubRequestError as exc:
            if exc.is_not_found:
                return None
            raise

    async def list_directory(self, owner: str, repo: str, path: str = "") -> list[str]:
        """File and directory names at ``path`` (repository root by default)."""
        try:
            names = await self._get(
                f"/repos/{owner}/{repo}/contents/{path}",
                channel=QuotaChannel.CORE,
                cache_key=f"contents:{path or 'root'}:{owner}/{repo}",
                ttl=CacheTTL.REPO_STATS,
                parse=_parse_names,
            )
        except GitHubRequestError as exc:
            if exc.is_not_found:
                return []
            raise
        return list(names or [])

    # GraphQL ------------------------------------------------------------------

    async def get_user_contributions(self, username: str, start: datetime, end: datetime) -> ContributionCalendar:
        """Contribution calendar between ``start`` and ``end`` (GitHub caps this at one year).

        The cache key keeps ``end`` to the hour, so windows clipped to "now"
        hit the cache for the rest of that hour.
        """
        variables = {"username": username, "from": start.isoformat(), "to": end.isoformat()}

        async def call() -> httpx.Response:
            return await self._http.post("/graphql", json={"query": CONTRIBUTIONS_QUERY, "variables": variables})

        payload = await self.executor.execute(
            channel=QuotaChannel.GRAPHQL,
            cache_key=f"contributions:{username}:{start.date().isoformat()}:{end.strftime('%Y-%m-%dT%H')}",
            ttl_seconds=int(CacheTTL.CONTRIBUTIONS),
            call=call,
            parse=_parse_contributions,
            throttle_seconds=self._graphql_throttle,
        )
        return ContributionCalendar.from_payload(payload)
