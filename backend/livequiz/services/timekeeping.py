"""UTC time helpers shared by the services."""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back naive; everything stored is UTC.
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def seconds_between(later: datetime, earlier: datetime) -> float:
    return (to_utc(later) - to_utc(earlier)).total_seconds()


def to_epoch(dt: Optional[datetime]) -> Optional[float]:
    if dt is None:
        return None
    return round(to_utc(dt).timestamp(), 3)


def parse_client_timestamp(value) -> Optional[datetime]:
    """Accept a datetime, an ISO-8601 string or epoch seconds/milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)):
        seconds = float(value) / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
