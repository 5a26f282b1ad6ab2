"""Tests for offset parsing, local dates and message age"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta

import pytest

from sweepq.utils.time import (
    age_in_days,
    from_db_ts,
    local_date,
    parse_utc_offset,
    parse_wall_clock,
    to_db_ts,
)


class TestParseUtcOffset:
    @pytest.mark.parametrize(
        ("offset", "expected"),
        [
            ("-08", timedelta(hours=-8)),
            ("+05:30", timedelta(hours=5, minutes=30)),
            ("+0530", timedelta(hours=5, minutes=30)),
            ("-8", timedelta(hours=-8)),
            ("+00", timedelta(0)),
            ("+14", timedelta(hours=14)),
        ],
    )
    def test_accepted_forms(self, offset, expected):
        assert parse_utc_offset(offset).utcoffset(None) == expected

    @pytest.mark.parametrize("offset", ["08", "PST", "", "+15", "-08:7", "+5:300"])
    def test_rejects_malformed_or_out_of_range(self, offset):
        with pytest.raises(ValueError):
            parse_utc_offset(offset)


def test_local_date_behind_utc_rolls_back_a_day():
    """01:00 UTC on the 10th is still the 9th at UTC-8"""
    now = datetime(2026, 3, 10, 1, 0, tzinfo=UTC)
    assert local_date(now, "-08") == date(2026, 3, 9)
    assert local_date(now, "+02") == date(2026, 3, 10)


def test_parse_wall_clock():
    assert parse_wall_clock("06:00") == time(6, 0)
    assert parse_wall_clock("23:59") == time(23, 59)
    with pytest.raises(ValueError):
        parse_wall_clock("6am")
    with pytest.raises(ValueError):
        parse_wall_clock("25:00")


def test_age_in_days_is_whole_days_and_never_negative():
    now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
    assert age_in_days(now - timedelta(days=10, hours=3), now) == 10
    assert age_in_days(now - timedelta(hours=23), now) == 0
    assert age_in_days(now + timedelta(days=2), now) == 0


def test_db_timestamps_sort_chronologically_as_strings():
    earlier = datetime(2026, 3, 10, 9, 5, 1, tzinfo=UTC)
    later = earlier + timedelta(microseconds=1)
    assert to_db_ts(earlier) < to_db_ts(later)
    assert from_db_ts(to_db_ts(earlier)) == earlier
    assert from_db_ts(None) is None


def test_naive_datetimes_are_treated_as_utc():
    naive = datetime(2026, 3, 10, 9, 0)
    assert to_db_ts(naive) == "2026-03-10T09:00:00.000000+00:00"
