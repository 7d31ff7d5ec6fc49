"""Sync job audit record"""

import enum

from sqlalchemy import Column, DateTime, Integer, String, Text

from devpanel.config.database import Base, BigIntId
from devpanel.utils.helpers import utcnow


class SyncJobType(str, enum.Enum):
    """Which cohort a sync job covers"""
    USERS = "users"
    REPOS = "repos"
    ALL = "all"
    ADOPTION = "adoption"


class SyncJobStatus(str, enum.Enum):
    """Lifecycle: RUNNING moves to COMPLETED or FAILED exactly once"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncJob(Base):
    """
    One audited execution of the ingestion pipeline

    ``sampling_params`` holds a JSON snapshot of every effective parameter so
    the cohort can be rebuilt from it and ``sampling_seed``.
    """
    __tablename__ = "sync_jobs"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    job_type = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True, default=SyncJobStatus.RUNNING.value)

    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    items_processed = Column(Integer, nullable=False, default=0)
    rate_limit_remaining = Column(Integer)

    sampling_seed = Column(Integer)
    sampling_params = Column(Text)
    error_message = Column(Text)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<SyncJob {self.id} {self.job_type} {self.status}>"
