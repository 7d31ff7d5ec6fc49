"""Repository flow metrics: weekly commits, daily pull requests and issues."""

from sqlalchemy import BigInteger, Column, Date, Float, ForeignKey, Integer, String, UniqueConstraint

from devpanel.config.database import Base, BigIntId

_FK = BigInteger().with_variant(Integer, "sqlite")


class CommitMetrics(Base):
    """Weekly commit totals for a repository; ``user_id`` is NULL for repo-level rows."""

    __tablename__ = "commit_metrics"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False, index=True)  # week start (UTC)
    repo_id = Column(_FK, ForeignKey("sampled_repos.id", ondelete="CASCADE"), index=True)
    user_id = Column(_FK, ForeignKey("sampled_users.id", ondelete="CASCADE"), nullable=True)
    language = Column(String(100), index=True)

    commit_count = Column(Integer, nullable=False, default=0)
    lines_added = Column(Integer, nullable=False, default=0)
    lines_removed = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("date", "user_id", "repo_id", "language", name="uk_commit_metrics"),
    )

    def __repr__(self):
        return f"<CommitMetrics {self.repo_id}:{self.date} commits={self.commit_count}>"


class PullRequestMetrics(Base):
    """Pull request activity for one repository on one UTC day."""

    __tablename__ = "pr_metrics"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False, index=True)
    repo_id = Column(_FK, ForeignKey("sampled_repos.id", ondelete="CASCADE"), index=True)
    user_id = Column(_FK, ForeignKey("sampled_users.id", ondelete="CASCADE"), nullable=True)
    language = Column(String(100), index=True)

    prs_opened = Column(Integer, nullable=False, default=0)
    prs_closed = Column(Integer, nullable=False, default=0)
    prs_merged = Column(Integer, nullable=False, default=0)
    avg_time_to_merge_hrs = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("date", "user_id", "repo_id", "language", name="uk_pr_metrics"),
    )

    def __repr__(self):
        return f"<PullRequestMetrics {self.repo_id}:{self.date} merged={self.prs_merged}>"


class IssueMetrics(Base):
    """Issue activity for one repository on one UTC day."""

    __tablename__ = "issue_metrics"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False, index=True)
    repo_id = Column(_FK, ForeignKey("sampled_repos.id", ondelete="CASCADE"), index=True)
    language = Column(String(100), index=True)

    issues_opened = Column(Integer, nullable=False, default=0)
    issues_closed = Column(Integer, nullable=False, default=0)
    avg_resolution_hrs = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("date", "repo_id", "language", name="uk_issue_metrics"),
    )

    def __repr__(self):
        return f"<IssueMetrics {self.repo_id}:{self.date} closed={self.issues_closed}>"
