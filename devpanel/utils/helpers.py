"""Utility helper functions"""

from __future__ import annotations

import math
import re
from datetime import UTC, date, datetime
from typing import Any, Iterator, Sequence, TypeVar

T = TypeVar("T")

REDACTED = "***REDACTED***"
MAX_LOG_TEXT = 300

_SENSITIVE_KEYS = ("authorization", "token", "api_key", "apikey", "secret", "password", "session", "cookie")
_PAYLOAD_KEYS = ("body", "content", "response_data", "readme")
_INLINE_SECRET = re.compile(
    r"(?i)(bearer\s+|token\s+|(?:access_token|api_key|token|password)\s*[=:]\s*)[^\s&,;\"']+"
)


def clamp_int(value: Any, minimum: int, maximum: int) -> int:
    """
    Truncate a numeric value to an int and clamp it into ``[minimum, maximum]``

    Non-numeric or non-finite values collapse to ``minimum``.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return minimum
    if not math.isfinite(number):
        return minimum
    return min(maximum, max(minimum, int(number)))


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of ``items`` with at most ``size`` elements."""
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]


def parse_github_datetime(raw: Any) -> datetime | None:
    """Parse a GitHub ISO-8601 timestamp into an aware UTC datetime."""
    if not isinstance(raw, str) or not raw.strip():
        return None

    text = raw.strip().replace("Z", "+00:00")
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        return None

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_day(moment: datetime) -> date:
    """UTC calendar day of an aware datetime."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).date()


def sanitize_for_log(value: Any, key: str | None = None) -> Any:
    """
    Redact credentials and bulky payloads before they reach a log line

    Args:
        value: Arbitrary value (dicts and lists are walked recursively)
        key: Name the value is stored under, used for key-based redaction

    Returns:
        A copy safe to log
    """
    lowered = (key or "").lower()
    if lowered and any(marker in lowered for marker in _SENSITIVE_KEYS):
        return REDACTED
    if lowered in _PAYLOAD_KEYS and isinstance(value, str):
        return f"<redacted payload {len(value)} chars>"

    if isinstance(value, dict):
        return {k: sanitize_for_log(v, key=str(k)) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_for_log(item) for item in value]
    if isinstance(value, str):
        masked = _INLINE_SECRET.sub(lambda match: f"{match.group(1)}{REDACTED}", value)
        if len(masked) > MAX_LOG_TEXT:
            masked = masked[:MAX_LOG_TEXT] + "..."
        return masked
    return value


def sanitize_log_extra(**fields: Any) -> dict[str, Any]:
    """Build a sanitized ``extra=`` mapping for structured log calls."""
    return {name: sanitize_for_log(value, key=name) for name, value in fields.items()}


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every stored datetime column."""
    return datetime.now(UTC).replace(tzinfo=None)
