"""Tests for store timestamp helpers."""
from datetime import datetime, timedelta, timezone

import pytest

from crowdsafe.shared.utils.timestamps import format_timestamp, parse_timestamp, utcnow


class TestFormatTimestamp:
    def test_fixed_width_utc(self):
        moment = datetime(2026, 3, 1, 9, 5, 7, 42, tzinfo=timezone.utc)
        assert format_timestamp(moment) == "2026-03-01T09:05:07.000042Z"

    def test_naive_taken_as_utc(self):
        assert format_timestamp(datetime(2026, 3, 1)) == "2026-03-01T00:00:00.000000Z"

    def test_converts_offsets_to_utc(self):
        moment = datetime(2026, 3, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(moment) == "2026-03-01T10:00:00.000000Z"

    def test_lexicographic_order_is_chronological(self):
        earlier = datetime(2026, 3, 1, 9, 59, 59, 999999, tzinfo=timezone.utc)
        later = earlier + timedelta(microseconds=1)
        assert format_timestamp(earlier) < format_timestamp(later)


class TestParseTimestamp:
    def test_parses_formatted_value(self):
        now = utcnow()
        assert parse_timestamp(format_timestamp(now)) == now

    def test_rejects_other_formats(self):
        with pytest.raises(ValueError):
            parse_timestamp("2026-03-01 10:00:00")
