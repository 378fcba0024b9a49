from datetime import date, datetime, timezone

import pytest

from ratewise.services.calendar import (
    FixedClock,
    date_range,
    hotel_today,
    nights_between,
    parse_date,
    stay_nights,
    to_wire_date,
    weekday_key,
)


def test_stay_nights_exclude_departure_day():
    nights = list(stay_nights(date(2025, 7, 15), date(2025, 7, 18)))
    assert nights == [date(2025, 7, 15), date(2025, 7, 16), date(2025, 7, 17)]
    assert nights_between(date(2025, 7, 15), date(2025, 7, 18)) == 3


def test_empty_stay_has_no_nights():
    assert list(stay_nights(date(2025, 7, 15), date(2025, 7, 15))) == []


def test_date_range_is_inclusive():
    assert list(date_range(date(2025, 12, 31), date(2026, 1, 1))) == [date(2025, 12, 31), date(2026, 1, 1)]


def test_hotel_today_uses_hotel_timezone():
    # 02:00 UTC is still the previous evening in New York
    now = datetime(2025, 7, 16, 2, 0, tzinfo=timezone.utc)
    assert hotel_today("America/New_York", now) == date(2025, 7, 15)
    assert hotel_today("Asia/Tokyo", now) == date(2025, 7, 16)
    assert hotel_today(None, now) == date(2025, 7, 16)


def test_weekday_keys():
    assert weekday_key(date(2025, 7, 18)) == "fri"
    assert weekday_key(date(2025, 7, 20)) == "sun"


def test_wire_dates():
    assert to_wire_date(date(2025, 3, 9)) == "2025-03-09"
    assert parse_date("2025-03-09T10:00:00Z") == date(2025, 3, 9)
    assert parse_date(datetime(2025, 3, 9, 23, 0)) == date(2025, 3, 9)


def test_fixed_clock_advances():
    clock = FixedClock(datetime(2025, 7, 1, tzinfo=timezone.utc))
    clock.advance(90)
    clock.advance(hours=1)
    assert clock.now() == datetime(2025, 7, 1, 1, 1, 30, tzinfo=timezone.utc)


def test_fixed_clock_rejects_naive_datetimes():
    with pytest.raises(ValueError):
        FixedClock(datetime(2025, 7, 1))
