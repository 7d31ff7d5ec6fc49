"""Sampled developer cohort member"""

from sqlalchemy import Column, DateTime, Float, Integer, String
from sqlalchemy.orm import relationship

from devpanel.config.database import Base, BigIntId
from devpanel.utils.helpers import utcnow


class SampledUser(Base):
    """
    A developer admitted to the cohort

    Rows only exist for users that passed the baseline-activity gate; a failed
    gate deletes the row together with its daily contribution rows.
    """
    __tablename__ = "sampled_users"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    github_id = Column(Integer, nullable=False, unique=True)
    username = Column(String(255), nullable=False, unique=True)
    tier = Column(String(32), nullable=False)  # top / mid / casual

    avatar_url = Column(String(1000))
    profile_url = Column(String(1000))
    followers = Column(Integer, nullable=False, default=0)
    public_repos = Column(Integer, nullable=False, default=0)

    total_contributions = Column(Integer, nullable=False, default=0)
    baseline_contributions = Column(Integer, nullable=False, default=0)

    ai_adoption_score = Column(Float, nullable=False, default=0.0)
    ai_adoption_first_seen_at = Column(DateTime)

    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    contributions = relationship(
        "UserContributionDaily",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<SampledUser {self.username} ({self.tier}, {self.followers} followers)>"
