"""Utilities for working with timestamps and calendar windows in UTC."""

from __future__ import annotations

import calendar
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple, Union

Number = Union[int, float]
Scalar = Union[Number, str]

_ISO_DATE_RE = re.compile(r"(\d{4}-\d{2}-\d{2})")


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_epoch_seconds(value: Optional[Scalar]) -> Optional[datetime]:
    """Convert ``value`` representing epoch seconds to a UTC ``datetime``."""

    if value in (None, "", b""):
        return None
    try:
        seconds = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_datetime(value: object) -> Optional[datetime]:
    """Parse ISO dates/timestamps (``Z`` suffix allowed) into UTC datetimes."""

    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    for fmt in ("%m/%d/%Y", "%m-%d-%Y", "%Y/%m/%d"):
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def to_iso_date(value: object) -> str:
    """Return ``YYYY-MM-DD`` for a parsable date value, else an empty string."""

    parsed = parse_datetime(value)
    if parsed is None:
        return ""
    return parsed.date().isoformat()


def extract_iso_date(value: str) -> Optional[str]:
    """Return the first ``YYYY-MM-DD`` fragment inside ``value``."""

    match = _ISO_DATE_RE.search(value or "")
    return match.group(1) if match else None


def day_bounds(moment: datetime) -> Tuple[datetime, datetime]:
    """Return the first and last instants of ``moment``'s calendar day."""

    start = datetime.combine(ensure_utc(moment).date(), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1) - timedelta(microseconds=1)


def week_bounds(moment: datetime) -> Tuple[datetime, datetime]:
    """Return the bounds of the Sunday-started week containing ``moment``."""

    current = ensure_utc(moment)
    days_since_sunday = (current.weekday() + 1) % 7
    start = datetime.combine(
        current.date() - timedelta(days=days_since_sunday), time.min, tzinfo=timezone.utc
    )
    return start, start + timedelta(days=7) - timedelta(microseconds=1)


def month_bounds(moment: datetime) -> Tuple[datetime, datetime]:
    """Return the bounds of the calendar month containing ``moment``."""

    current = ensure_utc(moment)
    start = datetime(current.year, current.month, 1, tzinfo=timezone.utc)
    last_day = calendar.monthrange(current.year, current.month)[1]
    end = datetime(current.year, current.month, last_day, 23, 59, 59, 999999, tzinfo=timezone.utc)
    return start, end


__all__ = [
    "day_bounds",
    "ensure_utc",
    "extract_iso_date",
    "from_epoch_seconds",
    "month_bounds",
    "parse_datetime",
    "to_iso_date",
    "utc_now",
    "week_bounds",
]
