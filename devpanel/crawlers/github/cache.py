"""Response caches for governed GitHub calls."""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import UTC, datetime, timedelta
from enum import IntEnum
from typing import Any, Callable, Protocol

from devpanel.models.api_cache import APICacheEntry

logger = logging.getLogger(__name__)

CACHE_MISS = object()


class CacheTTL(IntEnum):
    """Seconds a response stays fresh, by data volatility class."""

    PROFILE = 24 * 60 * 60
    REPO_STATS = 6 * 60 * 60
    SEARCH = 12 * 60 * 60
    CONTRIBUTIONS = 1 * 60 * 60


class ResponseCache(Protocol):
    """Storage interface for cached upstream payloads."""

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl_seconds: int) -> None: ...

    def purge_expired(self) -> int: ...


class InMemoryResponseCache:
    """Process-local cache; values are stored as given and returned verbatim."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, tuple[Any, float]] = {}

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return CACHE_MISS
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return CACHE_MISS
            return value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + int(ttl_seconds))

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SQLAlchemyResponseCache:
    """Cache backed by the ``api_cache`` table; payloads are stored as JSON."""

    def __init__(self, session_factory: Callable[[], Any], *, clock: Callable[[], datetime] | None = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(UTC).replace(tzinfo=None))
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            db = self._session_factory()
            try:
                entry = db.query(APICacheEntry).filter(APICacheEntry.cache_key == key).one_or_none()
                if entry is None or entry.expires_at <= self._clock():
                    return CACHE_MISS
                return json.loads(entry.response_data)
            finally:
                db.close()

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        expires_at = self._clock() + timedelta(seconds=int(ttl_seconds))
        payload = json.dumps(value, separators=(",", ":"))
        with self._lock:
            db = self._session_factory()
            try:
                entry = db.query(APICacheEntry).filter(APICacheEntry.cache_key == key).one_or_none()
                if entry is None:
                    db.add(
                        APICacheEntry(
                            cache_key=key,
                            endpoint=key.split(":", 1)[0],
                            response_data=payload,
                            expires_at=expires_at,
                        )
                    )
                else:
                    entry.response_data = payload
                    entry.expires_at = expires_at
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def purge_expired(self) -> int:
        """Delete expired entries and return how many were removed."""
        with self._lock:
            db = self._session_factory()
            try:
                removed = (
                    db.query(APICacheEntry)
                    .filter(APICacheEntry.expires_at <= self._clock())
                    .delete(synchronize_session=False)
                )
                db.commit()
                return int(removed or 0)
            finally:
                db.close()
