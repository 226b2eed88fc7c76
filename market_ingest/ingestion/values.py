"""Null-safe coercion of loosely typed provider values."""

from __future__ import annotations

import math
from datetime import date, datetime, time, timezone
from typing import Any, Optional


def to_float(value: Any) -> Optional[float]:
    """Return a finite float, or None for null, non-numeric, NaN and inf."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def to_int(value: Any) -> Optional[int]:
    number = to_float(value)
    if number is None:
        return None
    return int(number)


def to_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def parse_point_date(value: Any) -> Optional[datetime]:
    """Interpret a point's date as a UTC datetime.

    Accepts datetimes, dates, epoch seconds and ISO-8601 strings.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        # Millisecond epochs are 13 digits.
        seconds = value / 1000 if abs(value) >= 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def first_present(mapping: Any, *keys: str) -> Any:
    """Return the first non-null value among ``keys`` of a mapping."""
    if not isinstance(mapping, dict):
        return None
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None
