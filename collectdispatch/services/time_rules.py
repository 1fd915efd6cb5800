"""
Time helpers for the dispatch engine.
All persisted timestamps are naive UTC; aware values are normalised on the way in.
"""
from datetime import datetime, timedelta
from typing import Optional
import pytz


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(pytz.UTC).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(pytz.UTC).replace(tzinfo=None)


def age_seconds(then: datetime, now: Optional[datetime] = None) -> float:
    now = to_naive_utc(now or utcnow())
    return (now - to_naive_utc(then)).total_seconds()


def is_stale(last_seen_at: Optional[datetime], window_s: int, now: Optional[datetime] = None) -> bool:
    """
    A heartbeat is stale once it is strictly older than the window.
    A collector that never sent a heartbeat is always stale.
    """
    if last_seen_at is None:
        return True
    return age_seconds(last_seen_at, now) > window_s


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return to_naive_utc(dt).isoformat() + "Z"


def to_epoch_ms(dt: datetime) -> int:
    aware = pytz.UTC.localize(to_naive_utc(dt))
    return int(aware.timestamp() * 1000)


def from_epoch_ms(ms: int) -> datetime:
    return datetime(1970, 1, 1) + timedelta(milliseconds=ms)
