"""
Tests for datetime_utils module.
"""
import pytest
from datetime import datetime, timezone, timedelta
from app.utils.datetime_utils import (
    utc_now,
    parse_db_timestamp,
    is_past,
    expires_within,
    to_iso,
    format_display,
)


class TestUtcNow:
    """Test utc_now() function."""

    def test_returns_timezone_aware(self):
        """utc_now() returns timezone-aware datetime."""
        now = utc_now()
        assert now.tzinfo is not None
        assert now.tzinfo == timezone.utc

    def test_returns_utc(self):
        """utc_now() returns UTC time."""
        now = utc_now()
        diff = abs((now - datetime.now(timezone.utc)).total_seconds())
        assert diff < 1


class TestParseDbTimestamp:
    """Test parse_db_timestamp() function."""

    def test_none_returns_none(self):
        assert parse_db_timestamp(None) is None

    def test_empty_string_returns_none(self):
        assert parse_db_timestamp("") is None

    def test_iso_with_z_suffix(self):
        """Parses ISO format with Z suffix."""
        result = parse_db_timestamp("2024-01-13T12:00:00Z")
        assert result is not None
        assert result.tzinfo is not None
        assert result.year == 2024
        assert result.month == 1
        assert result.day == 13
        assert result.hour == 12

    def test_iso_with_offset_converted_to_utc(self):
        result = parse_db_timestamp("2024-01-13T14:00:00+02:00")
        assert result.hour == 12
        assert result.tzinfo == timezone.utc

    def test_naive_datetime_becomes_utc(self):
        """Naive datetime input is assumed UTC."""
        naive = datetime(2024, 1, 13, 12, 0, 0)
        result = parse_db_timestamp(naive)
        assert result is not None
        assert result.tzinfo == timezone.utc

    def test_epoch_milliseconds(self):
        """OAuth providers store expiry as epoch milliseconds."""
        result = parse_db_timestamp(1705147200000)
        assert result == datetime(2024, 1, 13, 12, 0, 0, tzinfo=timezone.utc)

    def test_invalid_values_return_none(self):
        assert parse_db_timestamp("not-a-date") is None
        assert parse_db_timestamp(True) is None
        assert parse_db_timestamp([]) is None


class TestIsPast:
    """Test is_past() function."""

    def test_none_never_expires(self):
        assert is_past(None) is False

    def test_past_timestamp(self):
        assert is_past(utc_now() - timedelta(minutes=1)) is True

    def test_future_timestamp(self):
        assert is_past((utc_now() + timedelta(days=1)).isoformat()) is False


class TestExpiresWithin:
    """Test expires_within() used by OAuth token refresh."""

    def test_unknown_expiry_counts_as_expiring(self):
        assert expires_within(None, 300) is True

    def test_inside_buffer(self):
        assert expires_within(utc_now() + timedelta(minutes=4), 300) is True

    def test_outside_buffer(self):
        assert expires_within(utc_now() + timedelta(minutes=10), 300) is False

    def test_already_expired(self):
        assert expires_within(utc_now() - timedelta(minutes=1), 300) is True


class TestFormatting:
    def test_to_iso_none(self):
        assert to_iso(None) is None

    def test_to_iso_naive_is_utc(self):
        assert to_iso(datetime(2024, 1, 13, 12, 0, 0)) == "2024-01-13T12:00:00+00:00"

    def test_format_display(self):
        assert format_display("2024-01-13T12:00:00Z") == "2024-01-13 12:00:00 UTC"

    @pytest.mark.parametrize("value", [None, "", "garbage"])
    def test_format_display_invalid_is_empty(self, value):
        assert format_display(value) == ""
