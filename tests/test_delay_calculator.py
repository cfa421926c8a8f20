"""Tests for calendar-aware delay calculation."""

from datetime import datetime, timezone

import pytest

from campaign_engine.core.delay_calculator import calculate_due_instant, due_instant_for
from campaign_engine.core.exceptions import ConfigurationError
from campaign_engine.models.core import BusinessHours, DelayConfig, DelayUnit, WorkflowSettings


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestPlainDelays:
    """Test delays without calendar rules."""

    def test_minutes_and_hours_are_exact(self):
        """Test sub-day delays add elapsed time."""
        base = utc(2024, 6, 5, 16, 45)
        assert calculate_due_instant(base, 90, DelayUnit.MINUTES) == utc(2024, 6, 5, 18, 15)
        assert calculate_due_instant(base, 3, DelayUnit.HOURS) == utc(2024, 6, 5, 19, 45)

    def test_weeks(self):
        """Test week delays."""
        assert calculate_due_instant(utc(2024, 6, 5, 8, 0), 2, DelayUnit.WEEKS) == utc(2024, 6, 19, 8, 0)

    def test_zero_amount_is_due_immediately(self):
        """Test zero delays."""
        base = utc(2024, 6, 5, 8, 0)
        assert calculate_due_instant(base, 0, DelayUnit.DAYS) == base

    def test_naive_base_is_read_as_utc(self):
        """Test naive input handling."""
        due = calculate_due_instant(datetime(2024, 6, 5, 8, 0), 1, DelayUnit.HOURS)
        assert due == utc(2024, 6, 5, 9, 0)
        assert due.tzinfo is not None

    def test_same_input_gives_same_instant(self):
        """Test the calculation is deterministic."""
        base = utc(2024, 6, 7, 17, 0)
        first = calculate_due_instant(base, 1, DelayUnit.DAYS, skip_weekends=True, specific_time="09:30")
        second = calculate_due_instant(base, 1, DelayUnit.DAYS, skip_weekends=True, specific_time="09:30")
        assert first == second


class TestCalendarRules:
    """Test weekend, business hours and time-of-day rules."""

    def test_friday_evening_plus_one_day_rolls_to_monday(self):
        """Test the weekend roll keeps the time of day."""
        due = calculate_due_instant(utc(2024, 6, 7, 17, 0), 1, DelayUnit.DAYS, skip_weekends=True)
        assert due == utc(2024, 6, 10, 17, 0)

    def test_saturday_plus_one_day_lands_on_monday(self):
        """Test a Sunday due instant is moved to Monday."""
        due = calculate_due_instant(utc(2024, 6, 1, 10, 0), 1, DelayUnit.DAYS, skip_weekends=True)
        assert due == utc(2024, 6, 3, 10, 0)

    def test_weekday_due_instant_is_untouched(self):
        """Test skip_weekends has no effect on weekdays."""
        due = calculate_due_instant(utc(2024, 6, 4, 10, 0), 1, DelayUnit.DAYS, skip_weekends=True)
        assert due == utc(2024, 6, 5, 10, 0)

    def test_business_hours_count_only_open_time(self):
        """Test hours outside the window are not counted."""
        # Friday 16:00 leaves one open hour; the second is counted on Monday
        due = calculate_due_instant(utc(2024, 6, 7, 16, 0), 2, DelayUnit.HOURS, business_hours_only=True)
        assert due == utc(2024, 6, 10, 10, 0)

    def test_business_hours_start_outside_window(self):
        """Test a delay started before opening counts from the opening."""
        due = calculate_due_instant(utc(2024, 6, 4, 6, 0), 30, DelayUnit.MINUTES, business_hours_only=True)
        assert due == utc(2024, 6, 4, 9, 30)

    def test_business_hours_window_end_is_inclusive(self):
        """Test a due instant exactly at closing time stays there."""
        due = calculate_due_instant(utc(2024, 6, 4, 16, 0), 1, DelayUnit.HOURS, business_hours_only=True)
        assert due == utc(2024, 6, 4, 17, 0)

    def test_day_delay_landing_after_hours_rolls_to_opening(self):
        """Test day delays snap into the next window."""
        due = calculate_due_instant(utc(2024, 6, 4, 20, 0), 1, DelayUnit.DAYS, business_hours_only=True)
        assert due == utc(2024, 6, 6, 9, 0)

    def test_custom_business_hours(self):
        """Test a custom window and open days."""
        hours = BusinessHours(start="08:00", end="12:00", days=[0, 2, 4])
        # Tuesday is closed
        due = calculate_due_instant(utc(2024, 6, 4, 10, 0), 1, DelayUnit.HOURS,
                                    business_hours_only=True, business_hours=hours)
        assert due == utc(2024, 6, 5, 9, 0)

    def test_specific_time_snaps_forward(self):
        """Test the due instant moves to the next occurrence of the time of day."""
        due = calculate_due_instant(utc(2024, 6, 3, 15, 0), 0, DelayUnit.DAYS, specific_time="09:00")
        assert due == utc(2024, 6, 4, 9, 0)

        later_same_day = calculate_due_instant(utc(2024, 6, 3, 7, 0), 0, DelayUnit.DAYS, specific_time="09:00")
        assert later_same_day == utc(2024, 6, 3, 9, 0)

    def test_timezone_keeps_wall_clock_across_dst(self):
        """Test day delays follow local wall-clock time."""
        # 10:00 EST on the day before the spring-forward switch
        due = calculate_due_instant(utc(2024, 3, 9, 15, 0), 1, DelayUnit.DAYS, timezone="America/New_York")
        assert due == utc(2024, 3, 10, 14, 0)

    def test_weekend_is_judged_in_local_time(self):
        """Test the weekday comes from the workflow's zone."""
        # Friday 23:30 UTC is already Saturday in Tokyo
        due = calculate_due_instant(utc(2024, 6, 7, 23, 30), 1, DelayUnit.DAYS,
                                    skip_weekends=True, timezone="Asia/Tokyo")
        assert due == utc(2024, 6, 9, 23, 30)


class TestDelayErrors:
    """Test invalid delay settings."""

    def test_unknown_timezone(self):
        """Test unknown zones are configuration errors."""
        with pytest.raises(ConfigurationError):
            calculate_due_instant(utc(2024, 6, 4, 10, 0), 1, DelayUnit.DAYS, timezone="Mars/Olympus")

    def test_negative_amount(self):
        """Test negative amounts are rejected."""
        with pytest.raises(ConfigurationError):
            calculate_due_instant(utc(2024, 6, 4, 10, 0), -1, DelayUnit.DAYS)

    def test_skip_weekends_with_weekend_only_hours(self):
        """Test an empty calendar is reported instead of looping."""
        hours = BusinessHours(days=[5, 6])
        with pytest.raises(ConfigurationError):
            calculate_due_instant(utc(2024, 6, 4, 10, 0), 1, DelayUnit.HOURS, business_hours_only=True,
                                  skip_weekends=True, business_hours=hours)


class TestDueInstantFor:
    """Test delay nodes combined with workflow settings."""

    def test_uses_workflow_calendar(self):
        """Test the workflow timezone and hours are applied."""
        config = DelayConfig(amount=1, unit="hours", business_hours_only=True)
        settings = WorkflowSettings(timezone="Europe/Berlin",
                                    business_hours=BusinessHours(start="09:00", end="17:00"))
        # 16:30 in Berlin (CEST, UTC+2)
        due = due_instant_for(config, utc(2024, 6, 4, 14, 30), settings)
        assert due == utc(2024, 6, 5, 7, 30)
