# Overview: UTC helpers for report windows and the wire format of timestamps.

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from .validation import ValidationError


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc_naive(dt: datetime) -> datetime:
    """Aware datetimes are converted to UTC; naive ones are already UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def start_of_day(dt: Optional[datetime] = None) -> datetime:
    """Midnight (UTC-naive) of the given day, or of today."""
    dt = dt or utcnow()
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


def day_window(dt: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """[start, end) window covering one calendar day."""
    start = start_of_day(dt)
    return start, start + timedelta(days=1)


def parse_iso_datetime(value: Optional[str], field: str = "datetime") -> Optional[datetime]:
    """
    Parse a query-string timestamp into a UTC-naive datetime.

    Blank values mean "no bound" and return None. Dates without a time are
    midnight UTC, a trailing Z or an offset is honored. Anything else raises
    ValidationError naming the field.
    """
    if value is None or not value.strip():
        return None

    text = value.strip()
    if text[-1] in "zZ":
        text = text[:-1] + "+00:00"

    try:
        return as_utc_naive(datetime.fromisoformat(text))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 date or datetime") from None


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Second-precision ISO-8601 with a trailing Z, e.g. 2026-10-18T09:30:00Z."""
    if dt is None:
        return None
    return as_utc_naive(dt).replace(microsecond=0).isoformat() + "Z"
