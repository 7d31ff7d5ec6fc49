import asyncio
from datetime import UTC, date, datetime

import pytest

from devpanel.crawlers.github.contracts import (
    ContributorStats,
    ContributorWeek,
    IssueEvent,
    PullRequestEvent,
    SearchRepoHit,
)
from devpanel.crawlers.github.flow_stage import (
    FlowStage,
    SQLAlchemyFlowRepository,
    aggregate_contributor_weeks,
    bucket_issues,
    bucket_pull_requests,
)
from devpanel.models.flow_metrics import CommitMetrics, IssueMetrics, PullRequestMetrics
from devpanel.models.sampled_repo import SampledRepo

WEEK_1 = int(datetime(2024, 1, 7, tzinfo=UTC).timestamp())
WEEK_2 = int(datetime(2024, 1, 14, tzinfo=UTC).timestamp())


def _repo_hit(repo_id: int = 1, owner: str | None = "octo") -> SearchRepoHit:
    return SearchRepoHit(
        id=repo_id,
        full_name=f"{owner or 'unknown'}/project{repo_id}",
        name=f"project{repo_id}",
        owner_login=owner,
        description=None,
        stars=1500,
        forks=40,
        open_issues=3,
    )


class FakeFlowClient:
    def __init__(
        self,
        *,
        stats=None,
        pr_pages: list[list[PullRequestEvent]] | Exception | None = None,
        issue_pages: list[tuple[list[IssueEvent], int]] | None = None,
    ) -> None:
        self.stats = stats
        self.pr_pages = pr_pages if pr_pages is not None else [[]]
        self.issue_pages = issue_pages if issue_pages is not None else [([], 0)]
        self.pr_requests: list[int] = []
        self.issue_requests: list[int] = []

    async def get_contributor_stats(self, owner, repo):
        if isinstance(self.stats, Exception):
            raise self.stats
        return self.stats

    async def list_pull_requests(self, owner, repo, *, per_page=100, page=1):
        if isinstance(self.pr_pages, Exception):
            raise self.pr_pages
        self.pr_requests.append(page)
        return self.pr_pages[page - 1] if page <= len(self.pr_pages) else []

    async def list_issues(self, owner, repo, *, per_page=100, page=1):
        self.issue_requests.append(page)
        return self.issue_pages[page - 1] if page <= len(self.issue_pages) else ([], 0)


def _stats() -> list[ContributorStats]:
    return [
        ContributorStats(
            author_login="alice",
            total=5,
            weeks=(
                ContributorWeek(week_start=WEEK_1, additions=100, deletions=10, commits=3),
                ContributorWeek(week_start=WEEK_2, additions=5, deletions=5, commits=0),
            ),
        ),
        ContributorStats(
            author_login="bob",
            total=2,
            weeks=(ContributorWeek(week_start=WEEK_1, additions=20, deletions=4, commits=2),),
        ),
        ContributorStats(
            author_login=None,
            total=9,
            weeks=(ContributorWeek(week_start=WEEK_1, additions=999, deletions=999, commits=9),),
        ),
    ]


def test_contributor_weeks_are_summed_and_empty_weeks_dropped() -> None:
    weeks = aggregate_contributor_weeks(_stats())

    assert list(weeks) == [date(2024, 1, 7)]
    totals = weeks[date(2024, 1, 7)]
    assert (totals.commits, totals.added, totals.removed) == (5, 120, 14)


def test_pull_requests_bucket_by_event_day() -> None:
    prs = [
        PullRequestEvent(
            created_at=datetime(2024, 3, 1, 22, 0, tzinfo=UTC),
            closed_at=datetime(2024, 3, 3, 10, 0, tzinfo=UTC),
            merged_at=datetime(2024, 3, 3, 10, 0, tzinfo=UTC),
        ),
        PullRequestEvent(
            created_at=datetime(2024, 3, 2, 8, 0, tzinfo=UTC),
            merged_at=datetime(2024, 3, 3, 20, 0, tzinfo=UTC),
        ),
        PullRequestEvent(created_at=datetime(2024, 3, 3, 1, 0, tzinfo=UTC)),
    ]

    days = bucket_pull_requests(prs)

    assert days[date(2024, 3, 1)].opened == 1
    assert days[date(2024, 3, 1)].avg_time_to_merge_hrs is None
    merge_day = days[date(2024, 3, 3)]
    assert (merge_day.opened, merge_day.closed, merge_day.merged) == (1, 1, 2)
    assert merge_day.avg_time_to_merge_hrs == pytest.approx((36 + 36) / 2)


def test_issue_resolution_lands_on_close_day() -> None:
    issues = [
        IssueEvent(created_at=datetime(2024, 5, 1, tzinfo=UTC), closed_at=datetime(2024, 5, 2, 6, tzinfo=UTC)),
        IssueEvent(created_at=datetime(2024, 5, 2, tzinfo=UTC), closed_at=datetime(2024, 5, 2, 12, tzinfo=UTC)),
        IssueEvent(created_at=datetime(2024, 5, 2, 13, tzinfo=UTC)),
    ]

    days = bucket_issues(issues)

    assert days[date(2024, 5, 1)].opened == 1
    assert days[date(2024, 5, 1)].avg_resolution_hrs is None
    assert days[date(2024, 5, 2)].opened == 2
    assert days[date(2024, 5, 2)].closed == 2
    assert days[date(2024, 5, 2)].avg_resolution_hrs == pytest.approx((30 + 12) / 2)


def test_pull_request_paging_stops_on_short_page() -> None:
    full_page = [PullRequestEvent(created_at=datetime(2024, 1, 1, tzinfo=UTC))] * 2
    client = FakeFlowClient(pr_pages=[full_page, full_page[:1], full_page])
    stage = FlowStage(client=client, repository=None, pr_pages=3, per_page=2)

    prs = asyncio.run(stage.fetch_pull_requests("octo", "project1"))

    assert len(prs) == 3
    assert client.pr_requests == [1, 2]


def test_issue_paging_uses_raw_page_length() -> None:
    issue = IssueEvent(created_at=datetime(2024, 1, 1, tzinfo=UTC))
    # First page was full upstream but one item was a pull request.
    client = FakeFlowClient(issue_pages=[([issue], 2), ([issue, issue], 2), ([], 0)])
    stage = FlowStage(client=client, repository=None, issue_pages=2, per_page=2)

    issues = asyncio.run(stage.fetch_issues("octo", "project1"))

    assert len(issues) == 3
    assert client.issue_requests == [1, 2]


def test_flow_stage_persists_rows_and_increments_commits(db) -> None:
    prs = [
        PullRequestEvent(
            created_at=datetime(2024, 2, 1, tzinfo=UTC),
            closed_at=datetime(2024, 2, 2, tzinfo=UTC),
            merged_at=datetime(2024, 2, 2, tzinfo=UTC),
        )
    ]
    issues = [IssueEvent(created_at=datetime(2024, 2, 1, tzinfo=UTC), closed_at=datetime(2024, 2, 1, 5, tzinfo=UTC))]
    client = FakeFlowClient(stats=_stats(), pr_pages=[prs], issue_pages=[(issues, 1)])
    stage = FlowStage(client=client, repository=SQLAlchemyFlowRepository(db))

    first = asyncio.run(stage.run([(_repo_hit(), "Python")]))
    second = asyncio.run(stage.run([(_repo_hit(), "Python")]))

    assert (first.repos, first.commit_weeks, first.pr_days, first.issue_days) == (1, 1, 2, 1)
    assert second.errors == []
    assert db.query(SampledRepo).count() == 1

    commit = db.query(CommitMetrics).one()
    assert (commit.commit_count, commit.lines_added, commit.lines_removed) == (10, 240, 28)
    assert commit.user_id is None

    pr_rows = {row.date: row for row in db.query(PullRequestMetrics).all()}
    assert pr_rows[date(2024, 2, 1)].prs_opened == 1
    assert pr_rows[date(2024, 2, 2)].prs_merged == 1
    assert pr_rows[date(2024, 2, 2)].avg_time_to_merge_hrs == pytest.approx(24.0)

    issue_row = db.query(IssueMetrics).one()
    assert (issue_row.issues_opened, issue_row.issues_closed) == (1, 1)
    assert issue_row.avg_resolution_hrs == pytest.approx(5.0)


def test_pending_statistics_and_feed_failures_are_isolated(db) -> None:
    issues = [IssueEvent(created_at=datetime(2024, 2, 1, tzinfo=UTC))]
    client = FakeFlowClient(stats=None, pr_pages=RuntimeError("pulls exploded"), issue_pages=[(issues, 1)])
    stage = FlowStage(client=client, repository=SQLAlchemyFlowRepository(db))

    stats = asyncio.run(stage.run([(_repo_hit(), "Go")]))

    assert stats.stats_pending == 1
    assert stats.issue_days == 1
    assert len(stats.errors) == 1
    assert "pulls exploded" in stats.errors[0]
    assert db.query(CommitMetrics).count() == 0


def test_repos_without_owner_are_skipped(db) -> None:
    stage = FlowStage(client=FakeFlowClient(), repository=SQLAlchemyFlowRepository(db))

    stats = asyncio.run(stage.run([(_repo_hit(owner=None), "Rust")]))

    assert stats.repos == 0
    assert db.query(SampledRepo).count() == 0


def test_resync_keeps_sampled_language_and_refreshes_counters(db) -> None:
    repository = SQLAlchemyFlowRepository(db)
    repo_id, language = repository.upsert_repo(_repo_hit(), "Python")

    updated = SearchRepoHit(
        id=1, full_name="octo/project1", name="project1", owner_login="octo",
        description=None, stars=2000, forks=41, open_issues=0,
    )
    assert language == "Python"
    assert repository.upsert_repo(updated, "Go") == (repo_id, "Python")

    repo = db.get(SampledRepo, repo_id)
    assert repo.primary_language == "Python"
    assert repo.stars == 2000


def test_rows_use_stored_language_when_repo_resurfaces_under_another(db) -> None:
    prs = [PullRequestEvent(created_at=datetime(2024, 2, 1, tzinfo=UTC))]
    client = FakeFlowClient(stats=_stats(), pr_pages=[prs])
    stage = FlowStage(client=client, repository=SQLAlchemyFlowRepository(db))

    asyncio.run(stage.run([(_repo_hit(), "TypeScript")]))
    asyncio.run(stage.run([(_repo_hit(), "JavaScript")]))

    assert {row.language for row in db.query(CommitMetrics)} == {"TypeScript"}
    assert {row.language for row in db.query(PullRequestMetrics)} == {"TypeScript"}
    assert db.query(CommitMetrics).one().commit_count == 10


def test_database_error_on_one_repo_does_not_poison_the_next(db) -> None:
    db.add(
        SampledRepo(github_id=500, full_name="octo/project1", owner="octo", name="project1", primary_language="C")
    )
    db.commit()
    issues = [IssueEvent(created_at=datetime(2024, 2, 1, tzinfo=UTC))]
    stage = FlowStage(
        client=FakeFlowClient(issue_pages=[(issues, 1)]),
        repository=SQLAlchemyFlowRepository(db),
    )

    # Same full_name under a new github_id collides on the unique column.
    stats = asyncio.run(stage.run([(_repo_hit(1), "Go"), (_repo_hit(2), "Go")]))

    assert stats.repos == 1
    assert len(stats.errors) == 1
    assert "octo/project1" in stats.errors[0]
    assert {repo.full_name for repo in db.query(SampledRepo)} == {"octo/project1", "octo/project2"}
    assert db.query(IssueMetrics).one().language == "Go"
