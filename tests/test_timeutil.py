from datetime import datetime, timedelta

import pytest

from inspector.timeutil import (
    format_duration,
    format_timestamp,
    is_timeout,
    parse_duration,
    parse_timeout,
    parse_timestamp,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("10m", timedelta(minutes=10)),
        ("1h30m", timedelta(hours=1, minutes=30)),
        ("90s", timedelta(seconds=90)),
        ("1.5h", timedelta(minutes=90)),
        ("250ms", timedelta(milliseconds=250)),
    ],
)
def test_parse_duration(text, expected):
    assert parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "10", "ten minutes", "5m junk", "m5"])
def test_parse_duration_rejects_garbage(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_parse_timeout_falls_back_to_default():
    assert parse_timeout("nonsense") == timedelta(minutes=10)
    assert parse_timeout(None, default="30s") == timedelta(seconds=30)
    assert parse_timeout("2m") == timedelta(minutes=2)


def test_format_duration_matches_go_rendering():
    assert format_duration(timedelta(seconds=45)) == "45s"
    assert format_duration(timedelta(minutes=2, seconds=5)) == "2m5s"
    assert format_duration(timedelta(hours=1)) == "1h0m0s"
    assert format_duration(timedelta(0)) == "0s"


def test_timestamp_round_trip_uses_fixed_format():
    value = datetime(2024, 3, 9, 7, 5, 1)
    text = format_timestamp(value)
    assert text == "2024-03-09 07:05:01"
    assert parse_timestamp(text) == value


def test_is_timeout_is_strictly_after_deadline():
    start = datetime(2024, 1, 1, 12, 0, 0)
    timeout = timedelta(minutes=10)
    assert not is_timeout(start, timeout, now=start + timeout)
    assert is_timeout(start, timeout, now=start + timeout + timedelta(seconds=1))
