"""Sampled repository cohort member"""

from sqlalchemy import Column, DateTime, Float, Integer, String, Text

from devpanel.config.database import Base, BigIntId
from devpanel.utils.helpers import utcnow


class SampledRepo(Base):
    """
    Repository sampled under a language stratum

    Re-syncs overwrite the mutable counters; identity columns and the language
    the repository was sampled under stay as first written.
    """
    __tablename__ = "sampled_repos"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    github_id = Column(Integer, nullable=False, unique=True)
    full_name = Column(String(500), nullable=False, unique=True)  # e.g., "facebook/react"
    owner = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    primary_language = Column(String(100), nullable=False)

    stars = Column(Integer, nullable=False, default=0)
    forks = Column(Integer, nullable=False, default=0)
    open_issues = Column(Integer, nullable=False, default=0)

    ai_adoption_score = Column(Float, nullable=False, default=0.0)
    ai_adoption_first_seen_at = Column(DateTime)

    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SampledRepo {self.full_name} ({self.stars} stars)>"
