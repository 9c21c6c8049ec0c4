from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> str:
    """Current time as an ISO 8601 string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Read a stored timestamp back as an aware datetime.

    Accepts datetimes, epoch seconds and ISO strings (a trailing ``Z`` is
    allowed). Naive values are taken as UTC; anything else yields None.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, ValueError, OSError):
            return None
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text[-1] in "zZ":
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def epoch_seconds(value: Any) -> float:
    """Sort key for recency; unreadable timestamps count as the epoch."""
    parsed = parse_timestamp(value)
    return parsed.timestamp() if parsed is not None else 0.0
