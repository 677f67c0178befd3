"""Tests for duty window resolution."""

from datetime import datetime, time
from unittest.mock import patch

import pytest

from alerting.services.duty import duty_clock, is_on_duty, parse_time_of_day


class TestParseTimeOfDay:
    def test_parses_hh_mm(self):
        assert parse_time_of_day("09:30") == time(9, 30)

    def test_drops_seconds(self):
        assert parse_time_of_day("09:30:45") == time(9, 30)

    def test_accepts_datetime(self):
        assert parse_time_of_day(datetime(2024, 1, 1, 22, 15, 59)) == time(22, 15)

    def test_empty_values_are_none(self):
        assert parse_time_of_day(None) is None
        assert parse_time_of_day("") is None

    def test_invalid_string_raises(self):
        with pytest.raises(ValueError):
            parse_time_of_day("not a time")


class TestIsOnDuty:
    """Tests for the [start, end) duty window check."""

    def test_missing_bounds_always_on_duty(self):
        assert is_on_duty(None, None, now=time(3, 0)) is True
        assert is_on_duty("09:00", None, now=time(3, 0)) is True
        assert is_on_duty(None, "17:00", now=time(3, 0)) is True

    def test_equal_bounds_mean_24h_duty(self):
        assert is_on_duty("08:00", "08:00", now=time(2, 0)) is True

    def test_inside_same_day_window(self):
        assert is_on_duty("09:00", "17:00", now=time(12, 0)) is True

    def test_start_is_inclusive(self):
        assert is_on_duty("09:00", "17:00", now=time(9, 0)) is True

    def test_end_is_exclusive(self):
        assert is_on_duty("09:00", "17:00", now=time(17, 0)) is False

    def test_outside_same_day_window(self):
        assert is_on_duty("09:00", "17:00", now=time(8, 59)) is False

    def test_window_wrapping_midnight(self):
        assert is_on_duty("22:00", "06:00", now=time(23, 30)) is True
        assert is_on_duty("22:00", "06:00", now=time(5, 59)) is True
        assert is_on_duty("22:00", "06:00", now=time(6, 0)) is False
        assert is_on_duty("22:00", "06:00", now=time(12, 0)) is False

    def test_accepts_time_objects(self):
        assert is_on_duty(time(9, 0), time(17, 0), now=time(10, 0)) is True

    def test_uses_duty_clock_without_now(self):
        with patch("alerting.services.duty.duty_clock", return_value=time(12, 0)) as clock:
            assert is_on_duty("09:00", "17:00", user_timezone="Europe/Berlin") is True
        clock.assert_called_once_with("Europe/Berlin")


class TestDutyClock:
    def test_unknown_zone_falls_back_to_server_time(self, monkeypatch):
        monkeypatch.setattr("alerting.services.duty.settings.duty_timezone", "Mars/Olympus")
        assert isinstance(duty_clock(), time)

    def test_user_mode_reads_member_zone(self, monkeypatch):
        monkeypatch.setattr("alerting.services.duty.settings.duty_timezone", "user")
        with patch("alerting.services.duty.datetime") as mock_datetime:
            mock_datetime.now.return_value = datetime(2024, 1, 1, 7, 45)
            result = duty_clock("Asia/Tokyo")

        assert result == time(7, 45)
        zone = mock_datetime.now.call_args.args[0]
        assert str(zone) == "Asia/Tokyo"

    def test_fixed_zone_ignores_member_zone(self, monkeypatch):
        monkeypatch.setattr("alerting.services.duty.settings.duty_timezone", "UTC")
        with patch("alerting.services.duty.datetime") as mock_datetime:
            mock_datetime.now.return_value = datetime(2024, 1, 1, 18, 5)
            duty_clock("Asia/Tokyo")

        zone = mock_datetime.now.call_args.args[0]
        assert str(zone) == "UTC"
