"""Delay Calculator: computes when a delay node's enrollment becomes due.

Pure and deterministic, so the Step Executor can recompute a due instant from
the time the node was entered without ever double-delaying.
"""

from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Iterable, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..models.core import BusinessHours, DelayConfig, DelayUnit, WorkflowSettings
from .clock import ensure_utc
from .exceptions import ConfigurationError

WEEKEND = frozenset({5, 6})  # Saturday, Sunday

_UNIT_SECONDS = {
    DelayUnit.MINUTES: 60,
    DelayUnit.HOURS: 3600,
}

_UNIT_DAYS = {
    DelayUnit.DAYS: 1,
    DelayUnit.WEEKS: 7,
}


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown timezone '{name}'", config_key="timezone") from e


def parse_time_of_day(value: str, config_key: str = "time") -> time:
    try:
        hours, minutes = value.strip().split(":")
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError) as e:
        raise ConfigurationError(f"Invalid time of day '{value}', expected HH:MM", config_key=config_key) from e


class _Window:
    """Daily open window on a set of weekdays, in local wall-clock time."""

    def __init__(self, start: time, end: time, days: Iterable[int]):
        if start >= end:
            raise ConfigurationError("Business hours must open before they close", config_key="business_hours")
        self.start = start
        self.end = end
        self.days: Set[int] = set(days)
        if not self.days:
            raise ConfigurationError("No open business days remain", config_key="business_hours")

    def is_open_day(self, day: date) -> bool:
        return day.weekday() in self.days

    def contains(self, moment: datetime) -> bool:
        return self.is_open_day(moment.date()) and self.start <= moment.time() <= self.end

    def next_open(self, moment: datetime) -> datetime:
        """Start of the next window at or after ``moment`` (``moment`` itself if inside)."""
        if self.contains(moment):
            return moment
        day = moment.date()
        if self.is_open_day(day) and moment.time() < self.start:
            return datetime.combine(day, self.start)
        for offset in range(1, 8):
            candidate = day + timedelta(days=offset)
            if self.is_open_day(candidate):
                return datetime.combine(candidate, self.start)
        raise ConfigurationError("No open business day within a week", config_key="business_hours")

    def add_open_time(self, moment: datetime, duration: timedelta) -> datetime:
        """Advance ``moment`` by ``duration`` counting only time inside the window."""
        cursor = self.next_open(moment)
        remaining = duration
        while True:
            window_end = datetime.combine(cursor.date(), self.end)
            available = window_end - cursor
            if remaining <= available:
                return cursor + remaining
            remaining -= available
            cursor = self.next_open(window_end + timedelta(minutes=1))


def _localize(naive: datetime, tz: ZoneInfo) -> datetime:
    return naive.replace(tzinfo=tz).astimezone(dt_timezone.utc)


def calculate_due_instant(
    base_instant: datetime,
    amount: int,
    unit: DelayUnit,
    business_hours_only: bool = False,
    skip_weekends: bool = False,
    specific_time: Optional[str] = None,
    timezone: str = "UTC",
    business_hours: Optional[BusinessHours] = None,
) -> datetime:
    """
    Compute the instant a delay started at ``base_instant`` becomes due.

    Args:
        base_instant: When the delay began; naive values are read as UTC
        amount: Number of units to wait
        unit: minutes, hours, days or weeks
        business_hours_only: Count minute/hour delays only inside the open
            window, and roll any due instant outside it to the next opening
        skip_weekends: Roll a due instant on Saturday or Sunday to Monday,
            keeping the time of day
        specific_time: HH:MM the due instant snaps forward to
        timezone: IANA zone of the workflow's calendar
        business_hours: Open window; defaults to 09:00-17:00 Monday to Friday

    Returns:
        Aware UTC datetime

    Raises:
        ConfigurationError: For unknown timezones, malformed times or an
            empty business calendar
    """
    if amount < 0:
        raise ConfigurationError(f"Delay amount cannot be negative: {amount}", config_key="amount")

    unit = DelayUnit(unit)
    tz = resolve_timezone(timezone)
    base_utc = ensure_utc(base_instant)
    local = base_utc.astimezone(tz).replace(tzinfo=None)

    window = None
    if business_hours_only:
        hours = business_hours or BusinessHours()
        open_days = set(hours.days) - WEEKEND if skip_weekends else set(hours.days)
        window = _Window(
            parse_time_of_day(hours.start, "business_hours.start"),
            parse_time_of_day(hours.end, "business_hours.end"),
            open_days,
        )

    adjusted = False
    if unit in _UNIT_SECONDS:
        duration = timedelta(seconds=amount * _UNIT_SECONDS[unit])
        if window is not None:
            local = window.add_open_time(local, duration)
            adjusted = True
            due_utc = None
        else:
            due_utc = base_utc + duration
            local = due_utc.astimezone(tz).replace(tzinfo=None)
    else:
        local = local + timedelta(days=amount * _UNIT_DAYS[unit])
        adjusted = True
        due_utc = None

    if specific_time:
        at = parse_time_of_day(specific_time, "specific_time")
        snapped = datetime.combine(local.date(), at)
        if snapped < local:
            snapped += timedelta(days=1)
        if snapped != local:
            local = snapped
            adjusted = True

    if skip_weekends:
        while local.weekday() in WEEKEND:
            local += timedelta(days=1)
            adjusted = True

    if window is not None and not window.contains(local):
        local = window.next_open(local)
        adjusted = True

    if adjusted or due_utc is None:
        return _localize(local, tz)
    return due_utc


def due_instant_for(config: DelayConfig, entered_at: datetime, settings: WorkflowSettings) -> datetime:
    """Due instant of a delay node entered at ``entered_at``."""
    return calculate_due_instant(
        entered_at,
        config.amount,
        config.unit,
        business_hours_only=config.business_hours_only,
        skip_weekends=config.skip_weekends,
        specific_time=config.specific_time,
        timezone=settings.timezone,
        business_hours=settings.business_hours,
    )
