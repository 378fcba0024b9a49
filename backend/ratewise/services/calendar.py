"""Clock and calendar helpers: UTC time, hotel-local dates and stay nights."""

from collections.abc import Iterator
from datetime import date, datetime, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo

WEEKDAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """Settable clock for tests and replays."""

    def __init__(self, fixed: datetime):
        if fixed.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")
        self._fixed = fixed

    def now(self) -> datetime:
        return self._fixed

    def set(self, value: datetime):
        self._fixed = value

    def advance(self, seconds: float = 0, **kwargs):
        self._fixed = self._fixed + timedelta(seconds=seconds, **kwargs)


system_clock = SystemClock()


def hotel_today(tz_name: str | None, now: datetime | None = None) -> date:
    """Calendar date at the hotel, falling back to UTC when no timezone is set."""
    now = now or utcnow()
    if not tz_name:
        return now.astimezone(timezone.utc).date()
    return now.astimezone(ZoneInfo(tz_name)).date()


def stay_nights(start: date, end: date) -> Iterator[date]:
    """Nights of a stay: every date in [start, end)."""
    d = start
    while d < end:
        yield d
        d += timedelta(days=1)


def date_range(start: date, end: date) -> Iterator[date]:
    """Every date in [start, end] inclusive."""
    d = start
    while d <= end:
        yield d
        d += timedelta(days=1)


def nights_between(start: date, end: date) -> int:
    return (end - start).days


def weekday_key(d: date) -> str:
    return WEEKDAY_KEYS[d.weekday()]


def to_wire_date(d: date) -> str:
    """ISO-8601 YYYY-MM-DD."""
    return d.isoformat()


def parse_date(value: str | date) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, datetime):
        return value.date()
    return date.fromisoformat(value[:10])


def ms(milliseconds: int | float) -> timedelta:
    return timedelta(milliseconds=milliseconds)
