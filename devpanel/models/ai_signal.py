"""AI adoption signal detected on a repository or user"""

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from devpanel.config.database import Base, BigIntId
from devpanel.utils.helpers import utcnow

_FK = BigInteger().with_variant(Integer, "sqlite")


class AISignal(Base):
    """Occurrences of one signal type from one source; counts accumulate across syncs."""

    __tablename__ = "ai_signals"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    signal_type = Column(String(64), nullable=False, index=True)
    source = Column(String(32), nullable=False)  # pr_text / readme / config

    user_id = Column(_FK, ForeignKey("sampled_users.id", ondelete="CASCADE"), nullable=True, index=True)
    repo_id = Column(_FK, ForeignKey("sampled_repos.id", ondelete="CASCADE"), nullable=True, index=True)

    occurrences = Column(Integer, nullable=False, default=1)
    first_seen_at = Column(DateTime, nullable=False)
    last_seen_at = Column(DateTime, nullable=False)
    examples = Column(Text)  # JSON list, at most five entries

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("signal_type", "source", "user_id", "repo_id", name="uk_ai_signal"),
    )

    def __repr__(self):
        return f"<AISignal {self.signal_type}/{self.source} x{self.occurrences}>"
