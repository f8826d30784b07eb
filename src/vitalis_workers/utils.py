"""Shared helpers for Vitalis workers."""

from __future__ import annotations

import math
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

# Health Auto Export writes "2024-01-15 07:30:00 -0800"; ISO 8601 is also accepted.
_EXPORT_TIMESTAMP_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d %H:%M:%S %z",
    "%Y-%m-%d %H:%M %z",
)


def as_float(value: Any) -> float | None:
    try:
        if value is None or isinstance(value, bool):
            return None
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (not banker's rounding)."""
    return math.floor(value + 0.5)


def round1(value: float) -> float:
    """One decimal place, half up."""
    return math.floor(value * 10 + 0.5) / 10


def mean(values: list[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)


def population_std_dev(values: list[float]) -> float | None:
    avg = mean(values)
    if avg is None:
        return None
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))


def parse_export_timestamp(value: Any) -> datetime | None:
    """Parse an exporter timestamp, keeping its UTC offset.

    The offset is kept so callers can read the wall-clock time the device saw;
    naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None

    for fmt in _EXPORT_TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue

    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def start_of_day_utc(day: date) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=UTC)


def day_window_utc(day: date) -> tuple[datetime, datetime]:
    """Half-open [00:00 UTC, +24h) interval for ``day``."""
    start = start_of_day_utc(day)
    return start, start + timedelta(days=1)
