from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_iso_utc(value: datetime) -> str:
    """Format ``value`` as a UTC ISO8601 string without fractional seconds.

    Naive datetimes are treated as UTC.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_iso_utc(value: str | datetime | None) -> Optional[datetime]:
    """Parse an ISO8601 timestamp into an aware UTC datetime.

    Accepts the trailing ``Z`` suffix, explicit offsets and naive values
    (treated as UTC). Returns ``None`` for empty input and raises
    ``ValueError`` for anything unparseable.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        candidate = value.strip()
        if not candidate:
            return None
        if candidate.endswith("Z") or candidate.endswith("z"):
            candidate = candidate[:-1] + "+00:00"
        parsed = datetime.fromisoformat(candidate)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def now_iso() -> str:
    """Return the current UTC time formatted for DB logging."""

    return format_iso_utc(utc_now())
