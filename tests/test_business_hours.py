"""Tests for business-hours arithmetic."""

from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

import pytest

from deskflow.core import ConfigurationException
from deskflow.sla.domain import (
    BusinessHoursSchedule,
    DaySchedule,
    advance,
    is_working_time,
    working_hours_between,
)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def weekdays(start, end, tz="UTC", holidays=()):
    return BusinessHoursSchedule(
        timezone=tz,
        days=tuple(DaySchedule(enabled=i < 5, start=start, end=end) for i in range(7)),
        holidays=frozenset(holidays),
    )


NINE_TO_SIX = weekdays(time(9), time(18))
EIGHT_TO_SIX = weekdays(time(8), time(18))

FRIDAY_5PM = utc(2024, 1, 19, 17, 0)


class TestAdvance:

    def test_friday_evening_rolls_over_weekend(self):
        assert advance(FRIDAY_5PM, 4, NINE_TO_SIX, True) == utc(2024, 1, 22, 12, 0)

    def test_friday_evening_with_eight_o_clock_start(self):
        assert advance(FRIDAY_5PM, 4, EIGHT_TO_SIX, True) == utc(2024, 1, 22, 11, 0)

    def test_calendar_mode_ignores_schedule(self):
        assert advance(FRIDAY_5PM, 4, NINE_TO_SIX, False) == utc(2024, 1, 19, 21, 0)

    def test_within_one_window(self):
        assert advance(utc(2024, 1, 15, 10, 0), 2.5, NINE_TO_SIX, True) == utc(2024, 1, 15, 12, 30)

    def test_landing_on_window_end_stays_on_that_day(self):
        assert advance(FRIDAY_5PM, 1, NINE_TO_SIX, True) == utc(2024, 1, 19, 18, 0)

    def test_start_outside_hours_begins_at_next_window(self):
        saturday = utc(2024, 1, 20, 10, 0)
        assert advance(saturday, 2, NINE_TO_SIX, True) == utc(2024, 1, 22, 11, 0)

    def test_holidays_are_skipped(self):
        schedule = weekdays(time(9), time(18), holidays=[date(2024, 1, 22)])
        assert advance(FRIDAY_5PM, 4, schedule, True) == utc(2024, 1, 23, 12, 0)

    def test_zero_hours_returns_start(self):
        assert advance(FRIDAY_5PM, 0, NINE_TO_SIX, True) == FRIDAY_5PM

    def test_negative_hours_rejected(self):
        with pytest.raises(ValueError):
            advance(FRIDAY_5PM, -1, NINE_TO_SIX, True)

    def test_schedule_without_working_time_raises(self):
        closed = BusinessHoursSchedule(days=tuple(DaySchedule(enabled=False) for _ in range(7)))
        with pytest.raises(ConfigurationException):
            advance(FRIDAY_5PM, 1, closed, True)

    def test_windows_follow_local_time_across_dst(self):
        new_york = weekdays(time(9), time(17), tz="America/New_York")
        # Friday 2024-03-08 16:00 EST; clocks go forward on Sunday the 10th
        start = datetime(2024, 3, 8, 16, 0, tzinfo=ZoneInfo("America/New_York"))

        due = advance(start, 3, new_york, True)

        assert due == utc(2024, 3, 11, 15, 0)
        assert due.astimezone(ZoneInfo("America/New_York")).hour == 11

    def test_result_is_utc(self):
        start = datetime(2024, 1, 15, 11, 0, tzinfo=ZoneInfo("Europe/Berlin"))
        assert advance(start, 1, NINE_TO_SIX, False).tzinfo == timezone.utc


class TestWorkingTime:

    def test_is_working_time(self):
        assert is_working_time(utc(2024, 1, 15, 10, 0), NINE_TO_SIX)
        assert not is_working_time(utc(2024, 1, 20, 10, 0), NINE_TO_SIX)
        assert not is_working_time(utc(2024, 1, 15, 18, 0), NINE_TO_SIX)

    def test_working_hours_between_spans_weekend(self):
        assert working_hours_between(FRIDAY_5PM, utc(2024, 1, 22, 12, 0), NINE_TO_SIX) == 4

    def test_working_hours_between_reversed_is_zero(self):
        assert working_hours_between(utc(2024, 1, 22, 12, 0), FRIDAY_5PM, NINE_TO_SIX) == 0


class TestSchedule:

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ConfigurationException):
            BusinessHoursSchedule(timezone="Mars/Olympus_Mons")

    def test_needs_seven_days(self):
        with pytest.raises(ConfigurationException):
            BusinessHoursSchedule(days=(DaySchedule(),))
