from __future__ import annotations

import datetime as dt
from typing import Any

UTC = dt.timezone.utc


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _from_epoch(value: float) -> dt.datetime | None:
    if value <= 0:
        return None
    try:
        return dt.datetime.fromtimestamp(value, UTC)
    except (OverflowError, OSError, ValueError):
        return None


def parse_datetime(value: Any) -> dt.datetime | None:
    """
    Coerce a timestamp into an aware UTC datetime.

    Accepts datetimes (naive ones are UTC), ISO strings with or without a "Z" suffix
    and unix epochs (numbers or digit strings). Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, dt.datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return _from_epoch(float(value))
    if not isinstance(value, str):
        return None
    s = value.strip()
    if s.isdigit():
        return _from_epoch(float(s))
    if s.endswith(("Z", "z")):
        s = s[:-1] + "+00:00"
    try:
        return ensure_utc(dt.datetime.fromisoformat(s))
    except ValueError:
        return None


def parse_date(value: Any) -> dt.date | None:
    """
    Coerce provider date values into a date.

    Accepts date/datetime objects, ISO strings ("2024-01-31", "2024-01-31T10:00:00Z")
    and unix timestamps (int/float or numeric strings, as SimpleFIN sends them).
    Returns None when the value cannot be interpreted.
    """
    if isinstance(value, dt.date) and not isinstance(value, dt.datetime):
        return value
    if isinstance(value, str) and not value.strip().isdigit():
        try:
            return dt.date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    d = parse_datetime(value)
    return d.date() if d is not None else None
