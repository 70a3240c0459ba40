"""
Business Hours Calendar
=======================

Working-time arithmetic for SLA due dates.

Windows are defined in the schedule's local timezone (one per weekday,
Monday first) and converted to UTC before any arithmetic, so DST shifts
shorten or lengthen the affected local day instead of skewing results.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import FrozenSet, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from deskflow.core import ConfigurationException

# Upper bound on calendar days walked by ``advance`` before giving up
MAX_SEARCH_DAYS = 366 * 2

WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class DaySchedule:
    """Working window for one weekday; ``end`` is exclusive."""
    enabled: bool = True
    start: time = time(9, 0)
    end: time = time(18, 0)

    @property
    def has_window(self) -> bool:
        return self.enabled and self.start < self.end


@dataclass(frozen=True)
class BusinessHoursSchedule:
    """
    Weekly calendar plus holidays.

    ``version`` identifies the configuration the schedule was loaded from;
    due dates remember which version produced them.
    """

    timezone: str = "UTC"
    days: Tuple[DaySchedule, ...] = field(
        default_factory=lambda: tuple(DaySchedule(enabled=i < 5) for i in range(7))
    )
    holidays: FrozenSet[date] = frozenset()
    version: Optional[str] = None

    def __post_init__(self):
        if len(self.days) != 7:
            raise ConfigurationException(
                "Business hours need exactly seven day entries (Monday-Sunday)",
                {"days": len(self.days)}
            )
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationException(
                f"Unknown business hours timezone '{self.timezone}'",
                {"timezone": self.timezone}
            ) from e

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def has_working_time(self) -> bool:
        return any(day.has_window for day in self.days)

    def window_for(self, local_day: date) -> Optional[Tuple[datetime, datetime]]:
        """UTC bounds of the working window on a local calendar day, if any."""
        if local_day in self.holidays:
            return None
        day = self.days[local_day.weekday()]
        if not day.has_window:
            return None
        tz = self.tz
        return (
            datetime.combine(local_day, day.start, tzinfo=tz).astimezone(timezone.utc),
            datetime.combine(local_day, day.end, tzinfo=tz).astimezone(timezone.utc),
        )


def _as_utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def is_working_time(instant: datetime, schedule: BusinessHoursSchedule) -> bool:
    """True if ``instant`` falls inside a working window of ``schedule``."""
    utc = _as_utc(instant)
    window = schedule.window_for(utc.astimezone(schedule.tz).date())
    return window is not None and window[0] <= utc < window[1]


def advance(
    start: datetime,
    hours: float,
    schedule: BusinessHoursSchedule,
    business_hours_only: bool,
) -> datetime:
    """
    Move ``start`` forward by ``hours``.

    Without ``business_hours_only`` this is calendar addition. Otherwise
    working time is consumed window by window, skipping closed days and
    holidays; when the target lands exactly on a window's end, that end
    is returned rather than the next day's start.

    Example (Mon-Fri 08:00-18:00): Friday 17:00 + 4h -> Monday 11:00.

    Raises:
        ValueError: negative ``hours``
        ConfigurationException: the schedule has no working time
    """
    if hours < 0:
        raise ValueError("hours must not be negative")

    cursor = _as_utc(start)
    if not business_hours_only:
        return cursor + timedelta(hours=hours)
    if hours == 0:
        return cursor
    if not schedule.has_working_time:
        raise ConfigurationException("Business hours schedule has no working time")

    remaining = timedelta(hours=hours)
    local_day = cursor.astimezone(schedule.tz).date()

    for _ in range(MAX_SEARCH_DAYS):
        window = schedule.window_for(local_day)
        if window is not None:
            window_start, window_end = window
            segment_start = max(cursor, window_start)
            if segment_start < window_end:
                available = window_end - segment_start
                if remaining <= available:
                    return segment_start + remaining
                remaining -= available
        local_day += timedelta(days=1)

    raise ConfigurationException(
        "No working time found in business hours schedule",
        {"searched_days": MAX_SEARCH_DAYS, "start": cursor.isoformat()}
    )


def working_hours_between(start: datetime, end: datetime, schedule: BusinessHoursSchedule) -> float:
    """Working hours contained in ``[start, end)``."""
    start, end = _as_utc(start), _as_utc(end)
    if end <= start:
        return 0.0

    total = timedelta(0)
    local_day = start.astimezone(schedule.tz).date()
    last_day = end.astimezone(schedule.tz).date()
    while local_day <= last_day:
        window = schedule.window_for(local_day)
        if window is not None:
            lo, hi = max(start, window[0]), min(end, window[1])
            if lo < hi:
                total += hi - lo
        local_day += timedelta(days=1)
    return total.total_seconds() / 3600
