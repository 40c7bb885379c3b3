from datetime import datetime, timedelta, timezone

import pytest

from utils import _parse_native, parse_date_strict, parse_published_date


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2024-03-01T10:00:00", datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)),
        ("Wed, 05 Sep 2025 23:19:00 GMT", datetime(2025, 9, 5, 23, 19, tzinfo=timezone.utc)),
        ("2024-03-01", datetime(2024, 3, 1, tzinfo=timezone.utc)),
        ("1710000000", datetime.fromtimestamp(1710000000, tz=timezone.utc)),
    ],
)
def test_parses_supported_formats(value, expected):
    assert parse_published_date(value) == expected


def test_unparseable_date_defaults_to_now():
    before = datetime.now(timezone.utc)
    parsed = parse_published_date("not a date")
    after = datetime.now(timezone.utc)

    assert before - timedelta(seconds=1) <= parsed <= after + timedelta(seconds=1)
    assert parse_date_strict("not a date") is None


def test_millisecond_timestamps():
    assert parse_published_date("1710000000000") == datetime.fromtimestamp(1710000000, tz=timezone.utc)


def test_offsets_are_normalized_to_utc():
    parsed = parse_published_date("Fri, 01 Mar 2024 10:00:00 +0200")
    assert parsed == datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


def test_rfc_date_without_weekday():
    parsed = parse_published_date("17 Nov 2025 00:00:00 +0000")
    assert parsed == datetime(2025, 11, 17, tzinfo=timezone.utc)


def test_iso_with_zulu_suffix():
    assert parse_published_date("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def test_empty_values():
    assert parse_date_strict(None) is None
    assert parse_date_strict("") is None
    assert parse_date_strict("   ") is None


def test_feedparser_handler_covers_rfc822_pubdates():
    assert _parse_native("Wed, 05 Sep 2025 23:19:00 GMT") == datetime(2025, 9, 5, 23, 19, tzinfo=timezone.utc)
    assert _parse_native("Sun, 12 May 2024 08:30:00 EST") == datetime(2024, 5, 12, 13, 30, tzinfo=timezone.utc)
    assert _parse_native("not a date") is None
    assert _parse_native("1710000000") is None
