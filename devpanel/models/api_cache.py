"""Persistent GitHub response cache entries"""

from sqlalchemy import Column, DateTime, String, Text

from devpanel.config.database import Base, BigIntId
from devpanel.utils.helpers import utcnow


class APICacheEntry(Base):
    """Serialized response keyed by logical request identity."""

    __tablename__ = "api_cache"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    cache_key = Column(String(500), nullable=False, unique=True)
    endpoint = Column(String(100), nullable=False)
    response_data = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<APICacheEntry {self.cache_key} until {self.expires_at}>"
