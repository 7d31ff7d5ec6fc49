"""Panel statistics: calendar math, rates, zero-padded percentiles, pre/post deltas."""

from __future__ import annotations

import calendar
import math
import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Iterable, Mapping, Sequence

import numpy as np

_MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")

PRE_PERIOD = ("2020-01", "2021-12")
POST_PERIOD_START = "2022-01"
DEFAULT_PANEL_START = date(2020, 1, 1)

DELTA_QUANTILES = {"p10": 0.10, "p25": 0.25, "median": 0.50, "p75": 0.75, "p90": 0.90}
PANEL_QUANTILES = {"p25": 0.25, "p50": 0.50, "p75": 0.75}


class PanelInputError(ValueError):
    """Malformed date range or non-finite input passed to a panel computation."""


def parse_month(value: str) -> tuple[int, int]:
    """Split ``YYYY-MM`` into (year, month)."""
    match = _MONTH_PATTERN.match(str(value).strip())
    if match is None:
        raise PanelInputError(f"Invalid month: {value!r}")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise PanelInputError(f"Invalid month: {value!r}")
    return year, month


def month_key(day: date) -> str:
    return f"{day.year}-{day.month:02d}"


def days_in_month(value: str) -> int:
    year, month = parse_month(value)
    return calendar.monthrange(year, month)[1]


def month_range(start: str, end: str) -> list[str]:
    """Inclusive list of ``YYYY-MM`` keys from ``start`` to ``end``."""
    year, month = parse_month(start)
    end_year, end_month = parse_month(end)
    if (year, month) > (end_year, end_month):
        raise PanelInputError(f"Invalid month range: {start}..{end}")

    months: list[str] = []
    while (year, month) <= (end_year, end_month):
        months.append(f"{year}-{month:02d}")
        month += 1
        if month == 13:
            year, month = year + 1, 1
    return months


@dataclass(frozen=True, slots=True)
class PeriodBounds:
    start_month: str
    end_month: str
    start: date
    end: date
    days: int


def period_bounds(start_month: str, end_month: str) -> PeriodBounds:
    """First and last calendar day of a month range plus its total day count."""
    months = month_range(start_month, end_month)
    start_year, start_mon = parse_month(start_month)
    end_year, end_mon = parse_month(end_month)
    return PeriodBounds(
        start_month=start_month,
        end_month=end_month,
        start=date(start_year, start_mon, 1),
        end=date(end_year, end_mon, calendar.monthrange(end_year, end_mon)[1]),
        days=sum(days_in_month(month) for month in months),
    )


def end_of_last_full_month(now: datetime | None = None) -> date:
    """Last day of the month before ``now`` (UTC); the current partial month is excluded."""
    now = now or datetime.now(UTC)
    first_of_month = date(now.year, now.month, 1)
    return first_of_month - timedelta(days=1)


def last_full_month(now: datetime | None = None) -> str:
    return month_key(end_of_last_full_month(now))


def ensure_finite(name: str, value: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise PanelInputError(f"{name} must be a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise PanelInputError(f"{name} must be finite, got {value!r}")
    return number


def ratio(numerator: float, denominator: float) -> float:
    """``numerator / denominator``, or 0 when the denominator is not positive."""
    return numerator / denominator if denominator > 0 else 0.0


def percentile(values: Sequence[float], q: float) -> float:
    """
    Linearly interpolated order statistic (``k = (n - 1) * q``).

    Empty input yields 0 and ``q`` is clamped to [0, 1].
    """
    if len(values) == 0:
        return 0.0
    q = min(1.0, max(0.0, ensure_finite("quantile", q)))
    return float(np.quantile(np.asarray(values, dtype=float), q))


def zero_padded_quantiles(
    active_values: Iterable[float],
    population: int,
    quantiles: Mapping[str, float] = PANEL_QUANTILES,
) -> dict[str, float]:
    """
    Quantiles over a population where members without activity count as 0.

    ``active_values`` holds one value per active member; the list is padded
    with zeros up to ``population`` before sorting.
    """
    values = [ensure_finite("value", value) for value in active_values]
    missing = max(0, int(population) - len(values))
    padded = np.concatenate([np.zeros(missing), np.asarray(values, dtype=float)])
    return {name: percentile(padded, q) for name, q in quantiles.items()}


def activity_rates(total: float, active_user_days: int, users: int, days: int) -> dict[str, float]:
    """Contributions per user per day, active-day share and per-active-day intensity."""
    denominator = users * days if users > 0 and days > 0 else 0
    return {
        "contributions_per_user_per_day": ratio(total, denominator),
        "active_day_share": ratio(active_user_days, denominator),
        "contributions_per_active_day": ratio(total, active_user_days),
    }


def period_stats(total: float, active_user_days: int, days: int, users: int) -> dict[str, float]:
    return {
        "total_contributions": total,
        "active_user_days": active_user_days,
        "days": days,
        **activity_rates(total, active_user_days, users, days),
    }


def per_user_deltas(
    totals: Iterable[tuple[float, float]],
    pre_days: int,
    post_days: int,
) -> list[float]:
    """Post-period minus pre-period daily rate for each (pre_total, post_total) pair."""
    deltas = []
    for pre_total, post_total in totals:
        pre_rate = ratio(ensure_finite("pre_total", pre_total), pre_days)
        post_rate = ratio(ensure_finite("post_total", post_total), post_days)
        deltas.append(post_rate - pre_rate)
    return deltas


def summarize_deltas(deltas: Iterable[float]) -> dict[str, float]:
    """Mean, percentiles and share of positive values; no zero padding."""
    values = np.asarray(list(deltas), dtype=float)
    n = int(values.size)
    summary: dict[str, float] = {"mean": float(np.mean(values)) if n else 0.0}
    summary.update({name: percentile(values, q) for name, q in DELTA_QUANTILES.items()})
    summary["pct_positive"] = float(np.mean(values > 0)) if n else 0.0
    summary["n"] = n
    return summary
