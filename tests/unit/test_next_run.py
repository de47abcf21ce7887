"""
Unit tests for next-run computation
"""

from datetime import datetime, time, timezone

import pytest

from core.exceptions import ConfigError
from models.base import Frequency
from pipeline.next_run import compute_next_run

UTC = timezone.utc

# 2024-01-17 is a Wednesday (day_of_week 3 with Sunday = 0)
WEDNESDAY_NOON = datetime(2024, 1, 17, 12, 0, tzinfo=UTC)


class TestDaily:

    def test_later_today(self):
        result = compute_next_run(Frequency.DAILY, time(15, 30), now=WEDNESDAY_NOON)
        assert result == datetime(2024, 1, 17, 15, 30, tzinfo=UTC)

    def test_passed_today_rolls_to_tomorrow(self):
        result = compute_next_run(Frequency.DAILY, time(9, 0), now=WEDNESDAY_NOON)
        assert result == datetime(2024, 1, 18, 9, 0, tzinfo=UTC)

    def test_exactly_now_counts_as_passed(self):
        """Test the result is strictly in the future"""
        result = compute_next_run(Frequency.DAILY, time(12, 0), now=WEDNESDAY_NOON)
        assert result == datetime(2024, 1, 18, 12, 0, tzinfo=UTC)

    def test_month_and_year_boundary(self):
        now = datetime(2024, 12, 31, 23, 0, tzinfo=UTC)
        result = compute_next_run(Frequency.DAILY, time(1, 0), now=now)
        assert result == datetime(2025, 1, 1, 1, 0, tzinfo=UTC)

    def test_accepts_string_frequency(self):
        result = compute_next_run("DAILY", time(15, 0), now=WEDNESDAY_NOON)
        assert result.hour == 15

    def test_naive_now_is_treated_as_utc(self):
        result = compute_next_run(Frequency.DAILY, time(15, 0), now=datetime(2024, 1, 17, 12, 0))
        assert result == datetime(2024, 1, 17, 15, 0, tzinfo=UTC)


class TestWeekly:

    def test_later_this_week(self):
        # Friday = 5
        result = compute_next_run(Frequency.WEEKLY, time(8, 0), day_of_week=5, now=WEDNESDAY_NOON)
        assert result == datetime(2024, 1, 19, 8, 0, tzinfo=UTC)

    def test_earlier_weekday_wraps_to_next_week(self):
        # Monday = 1
        result = compute_next_run(Frequency.WEEKLY, time(8, 0), day_of_week=1, now=WEDNESDAY_NOON)
        assert result == datetime(2024, 1, 22, 8, 0, tzinfo=UTC)

    def test_sunday_is_zero(self):
        result = compute_next_run(Frequency.WEEKLY, time(8, 0), day_of_week=0, now=WEDNESDAY_NOON)
        assert result == datetime(2024, 1, 21, 8, 0, tzinfo=UTC)

    def test_today_still_ahead(self):
        result = compute_next_run(Frequency.WEEKLY, time(18, 0), day_of_week=3, now=WEDNESDAY_NOON)
        assert result == datetime(2024, 1, 17, 18, 0, tzinfo=UTC)

    def test_today_passed_is_one_week_later(self):
        result = compute_next_run(Frequency.WEEKLY, time(9, 0), day_of_week=3, now=WEDNESDAY_NOON)
        assert result == datetime(2024, 1, 24, 9, 0, tzinfo=UTC)

    @pytest.mark.parametrize("day_of_week", [None, -1, 7])
    def test_invalid_day_of_week(self, day_of_week):
        with pytest.raises(ConfigError):
            compute_next_run(Frequency.WEEKLY, time(9, 0), day_of_week=day_of_week, now=WEDNESDAY_NOON)


class TestMonthly:

    def test_later_this_month(self):
        result = compute_next_run(Frequency.MONTHLY, time(6, 0), day_of_month=20, now=WEDNESDAY_NOON)
        assert result == datetime(2024, 1, 20, 6, 0, tzinfo=UTC)

    def test_passed_this_month(self):
        result = compute_next_run(Frequency.MONTHLY, time(6, 0), day_of_month=5, now=WEDNESDAY_NOON)
        assert result == datetime(2024, 2, 5, 6, 0, tzinfo=UTC)

    def test_clamped_to_short_month(self):
        """Test day 31 runs on the last day of February (leap year)"""
        now = datetime(2024, 2, 10, tzinfo=UTC)
        result = compute_next_run(Frequency.MONTHLY, time(6, 0), day_of_month=31, now=now)
        assert result == datetime(2024, 2, 29, 6, 0, tzinfo=UTC)

    def test_clamped_day_already_passed(self):
        now = datetime(2023, 4, 30, 12, 0, tzinfo=UTC)
        result = compute_next_run(Frequency.MONTHLY, time(6, 0), day_of_month=31, now=now)
        assert result == datetime(2023, 5, 31, 6, 0, tzinfo=UTC)

    def test_december_rolls_into_next_year(self):
        now = datetime(2024, 12, 20, tzinfo=UTC)
        result = compute_next_run(Frequency.MONTHLY, time(6, 0), day_of_month=1, now=now)
        assert result == datetime(2025, 1, 1, 6, 0, tzinfo=UTC)

    @pytest.mark.parametrize("day_of_month", [None, 0, 32])
    def test_invalid_day_of_month(self, day_of_month):
        with pytest.raises(ConfigError):
            compute_next_run(Frequency.MONTHLY, time(6, 0), day_of_month=day_of_month, now=WEDNESDAY_NOON)


class TestTimezoneAndErrors:

    def test_wall_clock_in_schedule_timezone(self):
        """Test 09:00 in New York (EST, UTC-5) is 14:00 UTC; 07:00 local is before it"""
        now = datetime(2024, 1, 17, 12, 0, tzinfo=UTC)
        result = compute_next_run(Frequency.DAILY, time(9, 0), now=now, tz="America/New_York")
        assert result == datetime(2024, 1, 17, 14, 0, tzinfo=UTC)
        assert result.tzinfo == UTC

    def test_unknown_timezone(self):
        with pytest.raises(ConfigError):
            compute_next_run(Frequency.DAILY, time(9, 0), now=WEDNESDAY_NOON, tz="Mars/Olympus")

    def test_unknown_frequency(self):
        with pytest.raises(ConfigError):
            compute_next_run("HOURLY", time(9, 0), now=WEDNESDAY_NOON)
