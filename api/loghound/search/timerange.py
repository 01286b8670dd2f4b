from __future__ import annotations
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import InvalidTimeRange
from .types import TimeRange

DURATION_PATTERN = re.compile(
    r"(\d+(?:\.\d+)?)\s*(s(?:ec(?:ond)?s?)?|m(?:in(?:ute)?s?)?|h(?:(?:ou)?rs?)?|d(?:ays?)?|w(?:eeks?)?)",
    re.IGNORECASE,
)

UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}

DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)


def parse_duration(value: str) -> timedelta:
    """Parse a relative duration such as ``30m``, ``1h30m``, ``1.5h`` or ``2days``."""
    text = (value or "").strip().lower()
    if not text:
        raise InvalidTimeRange("empty duration")

    total = 0.0
    position = 0
    for match in DURATION_PATTERN.finditer(text):
        if text[position:match.start()].strip():
            break
        total += float(match.group(1)) * UNIT_SECONDS[match.group(2)[0]]
        position = match.end()

    if position == 0 or text[position:].strip():
        raise InvalidTimeRange(
            f"invalid duration '{value}'. Examples: 1h, 30m, 2d, 1h30m, 1.5h"
        )
    return timedelta(seconds=int(total))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an absolute timestamp, returning None when no format matches."""
    if not value:
        return None
    text = value.strip()
    try:
        return _as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in DATETIME_FORMATS:
        try:
            return _as_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    return None


def parse_datetime(value: str) -> datetime:
    """Parse a user-supplied instant or raise InvalidTimeRange."""
    parsed = parse_timestamp(value)
    if parsed is None:
        raise InvalidTimeRange(
            f"unable to parse datetime '{value}'. "
            "Expected formats: RFC3339, YYYY-MM-DD HH:MM:SS, YYYY-MM-DD"
        )
    return parsed


def resolve_time_range(
    last: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    now: Optional[datetime] = None,
    default_last: str = "1h",
) -> TimeRange:
    """Resolve relative or explicit specifiers into an absolute TimeRange.

    Resolution happens once, against ``now``; jobs never re-evaluate it.
    An explicit ``start`` takes precedence over ``last``.
    """
    now = _as_utc(now) if now else datetime.now(timezone.utc)

    if start:
        start_dt = parse_datetime(start)
        end_dt = parse_datetime(end) if end else now
        return TimeRange(start=start_dt, end=end_dt)

    if end:
        raise InvalidTimeRange("'end' requires 'start'")

    duration = parse_duration(last or default_last)
    return TimeRange(start=now - duration, end=now)
