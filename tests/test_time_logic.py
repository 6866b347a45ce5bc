import pytest
from datetime import datetime, time, timedelta, timezone

from scute.utils.time import (
    add_months,
    ensure_aware,
    format_remaining,
    next_occurrence,
    parse_time_string,
    parse_timestamp,
    to_epoch_ms,
)

UTC = timezone.utc


def test_parse_time_string():
    # Test various formats
    assert parse_time_string("8pm").time() == time(20, 0)
    assert parse_time_string("8:30pm").time() == time(20, 30)
    assert parse_time_string("20:00").time() == time(20, 0)
    assert parse_time_string("08:00").time() == time(8, 0)

    with pytest.raises(ValueError):
        parse_time_string("invalid")


def test_parse_timestamp_iso_keeps_offset():
    parsed = parse_timestamp("2026-03-02T10:00:00+02:00")
    assert parsed == datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
    assert parsed.tzinfo is UTC


def test_parse_timestamp_time_of_day_is_aware():
    ref_now = datetime.combine(datetime.now().date(), time(12, 0))
    parsed = parse_timestamp("8pm", now=ref_now)
    assert parsed.tzinfo is not None
    assert parsed.astimezone().time() == time(20, 0)


def test_ensure_aware_converts_to_utc():
    aware = datetime(2026, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=-5)))
    assert ensure_aware(aware) == datetime(2026, 1, 1, 17, 0, tzinfo=UTC)


def test_to_epoch_ms():
    assert to_epoch_ms(None) == 0
    assert to_epoch_ms(datetime(1970, 1, 1, 0, 0, 1, tzinfo=UTC)) == 1000


@pytest.mark.parametrize(
    "seconds, expected",
    [
        (93784, "1d 2h 3m"),
        (7384, "2h 3m 4s"),
        (184, "3m 4s"),
        (4, "4s"),
        (0, "0s"),
        (-5, "0s"),
    ],
)
def test_format_remaining(seconds, expected):
    assert format_remaining(seconds) == expected


def test_add_months_clamps_day():
    assert add_months(datetime(2026, 1, 31, 9, 0, tzinfo=UTC), 1) == datetime(2026, 2, 28, 9, 0, tzinfo=UTC)
    assert add_months(datetime(2026, 11, 15, tzinfo=UTC), 3) == datetime(2027, 2, 15, tzinfo=UTC)


def test_next_occurrence_daily():
    start = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    end = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
    now = datetime(2026, 3, 2, 10, 1, tzinfo=UTC)

    new_start, new_end = next_occurrence(start, end, "days", 1, now)

    assert new_start == datetime(2026, 3, 3, 9, 0, tzinfo=UTC)
    assert new_end == datetime(2026, 3, 3, 10, 0, tzinfo=UTC)


def test_next_occurrence_skips_missed_periods():
    start = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    end = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
    # Device slept for ten days
    now = datetime(2026, 3, 12, 12, 0, tzinfo=UTC)

    new_start, new_end = next_occurrence(start, end, "days", 1, now)

    assert new_start == datetime(2026, 3, 13, 9, 0, tzinfo=UTC)
    assert new_end - new_start == timedelta(hours=1)


@pytest.mark.parametrize(
    "unit, interval, expected_start",
    [
        ("minutes", 30, datetime(2026, 3, 2, 10, 30, tzinfo=UTC)),
        ("hours", 2, datetime(2026, 3, 2, 11, 0, tzinfo=UTC)),
        ("weeks", 1, datetime(2026, 3, 9, 9, 0, tzinfo=UTC)),
        ("months", 1, datetime(2026, 4, 2, 9, 0, tzinfo=UTC)),
    ],
)
def test_next_occurrence_units(unit, interval, expected_start):
    start = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    end = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
    now = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)

    new_start, new_end = next_occurrence(start, end, unit, interval, now)

    assert new_start == expected_start
    assert new_start > now


def test_next_occurrence_month_end_clamps():
    start = datetime(2026, 1, 31, 20, 0, tzinfo=UTC)
    end = datetime(2026, 1, 31, 22, 0, tzinfo=UTC)
    now = datetime(2026, 2, 1, 0, 0, tzinfo=UTC)

    new_start, new_end = next_occurrence(start, end, "months", 1, now)

    assert new_start == datetime(2026, 2, 28, 20, 0, tzinfo=UTC)
    assert new_end == datetime(2026, 2, 28, 22, 0, tzinfo=UTC)


def test_next_occurrence_rejects_bad_input():
    start = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
    end = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
    with pytest.raises(ValueError):
        next_occurrence(start, end, "days", 0, end)
    with pytest.raises(ValueError):
        next_occurrence(end, start, "days", 1, end)
    with pytest.raises(ValueError):
        next_occurrence(start, end, "fortnights", 1, end)
