"""UTC helpers.

Every timestamp stored by the backend is a **naive** UTC datetime; these
helpers produce and parse them consistently.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def utc_date_key(moment: Optional[datetime] = None) -> str:
    """Calendar day (``YYYY-MM-DD``) used to key the daily budget row."""
    return (moment or utcnow()).strftime("%Y-%m-%d")


def to_utc_naive(value: object) -> Optional[datetime]:
    """Coerce API timestamps (ISO strings, datetimes, epoch numbers) to naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in exchange payloads
        seconds = float(value) / 1000.0 if value > 1e11 else float(value)
        return utcfromtimestamp(seconds)

    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text[:10], "%Y-%m-%d")
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
