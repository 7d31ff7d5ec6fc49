"""Adoption stage: scan sampled repositories for AI tooling footprints."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, Sequence

from devpanel.crawlers.github.contracts import PullRequestEvent
from devpanel.models.ai_signal import AISignal
from devpanel.models.sampled_repo import SampledRepo
from devpanel.models.sampled_user import SampledUser
from devpanel.services.adoption import (
    AI_CONFIG_PATTERNS,
    AI_TEXT_PATTERNS,
    README_EXAMPLE_CHARS,
    compute_adoption_score,
    extract_matches,
    merge_examples,
)
from devpanel.utils.helpers import sanitize_log_extra, utcnow

logger = logging.getLogger(__name__)

SOURCE_PR_TEXT = "pr_text"
SOURCE_README = "readme"
SOURCE_CONFIG = "config"


@dataclass(frozen=True, slots=True)
class AdoptionRepoRef:
    """Minimal repository reference for a signal scan."""

    repo_id: int
    owner: str
    name: str


@dataclass(slots=True)
class AdoptionStageStats:
    """Stage execution statistics."""

    repos_scanned: int = 0
    signals_recorded: int = 0
    users_updated: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class AdoptionClient(Protocol):
    async def list_pull_requests(self, owner: str, repo: str, *, per_page: int = ..., page: int = ...) -> list[PullRequestEvent]: ...

    async def get_readme(self, owner: str, repo: str) -> Optional[str]: ...

    async def list_directory(self, owner: str, repo: str, path: str = "") -> list[str]: ...


class AdoptionRepository(Protocol):
    """Storage interface for AI signals and adoption aggregates."""

    def list_repos(self) -> list[AdoptionRepoRef]: ...

    def find_user_id(self, username: str) -> Optional[int]: ...

    def upsert_signal(
        self,
        *,
        signal_type: str,
        source: str,
        seen_at: datetime,
        occurrences: int,
        examples: Optional[list[str]],
        repo_id: Optional[int],
        user_id: Optional[int],
    ) -> None: ...

    def refresh_repo_aggregate(self, repo_id: int) -> None: ...

    def refresh_user_aggregate(self, user_id: int) -> None: ...

    def rollback(self) -> None: ...


def _first_seen_and_score(signals: Sequence[AISignal]) -> tuple[datetime, float]:
    first_seen = min(signal.first_seen_at for signal in signals)
    score = compute_adoption_score((signal.signal_type, signal.occurrences) for signal in signals)
    return first_seen, score


class SQLAlchemyAdoptionRepository:
    """SQLAlchemy-backed repository for ai_signals and the adoption columns."""

    def __init__(self, session: Any) -> None:
        self._session = session

    def list_repos(self) -> list[AdoptionRepoRef]:
        rows = self._session.query(SampledRepo).order_by(SampledRepo.id.asc()).all()
        return [AdoptionRepoRef(repo_id=int(row.id), owner=row.owner, name=row.name) for row in rows]

    def find_user_id(self, username: str) -> Optional[int]:
        user = self._session.query(SampledUser.id).filter(SampledUser.username == username).one_or_none()
        return int(user[0]) if user is not None else None

    def upsert_signal(
        self,
        *,
        signal_type: str,
        source: str,
        seen_at: datetime,
        occurrences: int,
        examples: Optional[list[str]],
        repo_id: Optional[int],
        user_id: Optional[int],
    ) -> None:
        query = self._session.query(AISignal).filter(
            AISignal.signal_type == signal_type,
            AISignal.source == source,
        )
        query = query.filter(AISignal.user_id.is_(None) if user_id is None else AISignal.user_id == user_id)
        query = query.filter(AISignal.repo_id.is_(None) if repo_id is None else AISignal.repo_id == repo_id)
        existing = query.one_or_none()

        if existing is None:
            merged = merge_examples(None, examples)
            self._session.add(
                AISignal(
                    signal_type=signal_type,
                    source=source,
                    user_id=user_id,
                    repo_id=repo_id,
                    occurrences=occurrences,
                    first_seen_at=seen_at,
                    last_seen_at=seen_at,
                    examples=json.dumps(merged) if merged is not None else None,
                )
            )
        else:
            previous = json.loads(existing.examples) if existing.examples else None
            merged = merge_examples(previous, examples)
            existing.occurrences += occurrences
            existing.last_seen_at = seen_at
            existing.examples = json.dumps(merged) if merged is not None else None
        self._session.commit()

    def refresh_repo_aggregate(self, repo_id: int) -> None:
        signals = self._session.query(AISignal).filter(AISignal.repo_id == repo_id).all()
        repo = self._session.get(SampledRepo, repo_id)
        if not signals or repo is None:
            return
        repo.ai_adoption_first_seen_at, repo.ai_adoption_score = _first_seen_and_score(signals)
        self._session.commit()

    def refresh_user_aggregate(self, user_id: int) -> None:
        signals = self._session.query(AISignal).filter(AISignal.user_id == user_id).all()
        user = self._session.get(SampledUser, user_id)
        if not signals or user is None:
            return
        user.ai_adoption_first_seen_at, user.ai_adoption_score = _first_seen_and_score(signals)
        self._session.commit()

    def rollback(self) -> None:
        self._session.rollback()


class AdoptionStage:
    """
    Records AI tooling mentions found in pull request text, READMEs and
    configuration files of every sampled repository.

    Occurrences accumulate across scans; repository and author adoption
    scores are recomputed from the stored signals afterwards.
    """

    def __init__(
        self,
        *,
        client: AdoptionClient,
        repository: AdoptionRepository,
        pr_pages: int = 2,
        per_page: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client = client
        self._repository = repository
        self._pr_pages = pr_pages
        self._per_page = per_page
        self._clock = clock

    async def run(self) -> AdoptionStageStats:
        stats = AdoptionStageStats()
        affected_users: set[int] = set()
        for repo in self._repository.list_repos():
            try:
                await self._scan_repo(repo, stats, affected_users)
                self._repository.refresh_repo_aggregate(repo.repo_id)
                stats.repos_scanned += 1
            except Exception as exc:
                self._repository.rollback()
                stats.failed += 1
                stats.errors.append(f"{repo.owner}/{repo.name}: {exc}")
                logger.warning(
                    "Adoption scan failed",
                    extra=sanitize_log_extra(repo=f"{repo.owner}/{repo.name}", error=str(exc)),
                )

        for user_id in sorted(affected_users):
            self._repository.refresh_user_aggregate(user_id)
        stats.users_updated = len(affected_users)
        return stats

    async def _scan_repo(self, repo: AdoptionRepoRef, stats: AdoptionStageStats, affected_users: set[int]) -> None:
        for page in range(1, self._pr_pages + 1):
            prs = await self._client.list_pull_requests(repo.owner, repo.name, per_page=self._per_page, page=page)
            if not prs:
                break
            for pr in prs:
                stats.signals_recorded += self._record_pull_request(repo, pr, affected_users)
            if len(prs) < self._per_page:
                break

        readme = await self._client.get_readme(repo.owner, repo.name)
        if readme:
            for match in extract_matches(readme, AI_TEXT_PATTERNS):
                self._repository.upsert_signal(
                    signal_type=match.pattern.signal_type,
                    source=SOURCE_README,
                    seen_at=self._clock(),
                    occurrences=match.count,
                    examples=[readme[:README_EXAMPLE_CHARS]],
                    repo_id=repo.repo_id,
                    user_id=None,
                )
                stats.signals_recorded += 1

        root_files = await self._client.list_directory(repo.owner, repo.name)
        github_files = await self._client.list_directory(repo.owner, repo.name, ".github") if ".github" in root_files else []
        paths = "\n".join(root_files + [f".github/{name}" for name in github_files])
        for match in extract_matches(paths, AI_CONFIG_PATTERNS):
            self._repository.upsert_signal(
                signal_type=match.pattern.signal_type,
                source=SOURCE_CONFIG,
                seen_at=self._clock(),
                occurrences=match.count,
                examples=[paths],
                repo_id=repo.repo_id,
                user_id=None,
            )
            stats.signals_recorded += 1

    def _record_pull_request(self, repo: AdoptionRepoRef, pr: PullRequestEvent, affected_users: set[int]) -> int:
        text = f"{pr.title}\n{pr.body}".strip()
        if not text:
            return 0
        matches = extract_matches(text, AI_TEXT_PATTERNS)
        if not matches:
            return 0

        author_id = self._repository.find_user_id(pr.author_login) if pr.author_login else None
        seen_at = pr.created_at.replace(tzinfo=None)
        for match in matches:
            self._repository.upsert_signal(
                signal_type=match.pattern.signal_type,
                source=SOURCE_PR_TEXT,
                seen_at=seen_at,
                occurrences=match.count,
                examples=[pr.title] if pr.title else None,
                repo_id=repo.repo_id,
                user_id=author_id,
            )
        if author_id is not None:
            affected_users.add(author_id)
        return len(matches)
