"""Timezone helpers shared by the time parser, proposal builder and SLA monitor.

Every instant that leaves this module is timezone-aware UTC. Local wall-clock
values only exist for display and for business-hours checks.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"

WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
MONTH_NAMES = [
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
]


def normalize_timezone(tz_name: str | None, default: str = DEFAULT_TIMEZONE) -> str:
    """Return ``tz_name`` if it is a known IANA zone, otherwise ``default``."""
    if not tz_name:
        return default
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone, using default", extra={"timezone": tz_name, "default": default})
        return default
    return tz_name


def get_zone(tz_name: str | None) -> ZoneInfo:
    return ZoneInfo(normalize_timezone(tz_name))


def to_instant(timestamp: str, tz_name: str) -> tuple[datetime, bool]:
    """Turn an ISO-8601 string into a UTC instant.

    A trailing ``Z`` or an explicit offset is honoured as written. A bare
    local timestamp is read as wall-clock time in ``tz_name``; the second
    element of the result is True in that case.

    Raises:
        ValueError: if the string is not ISO-8601.
    """
    value = timestamp.strip()
    if value[-1:] in ("Z", "z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        return parsed.astimezone(timezone.utc), False
    local = parsed.replace(tzinfo=get_zone(tz_name))
    return local.astimezone(timezone.utc), True


def to_local(instant: datetime, tz_name: str) -> datetime:
    return instant.astimezone(get_zone(tz_name))


def local_parts(instant: datetime, tz_name: str) -> dict[str, object]:
    """Wall-clock fields of ``instant`` in ``tz_name`` for prompts and checks."""
    local = to_local(instant, tz_name)
    return {
        "date": local.date(),
        "hour": local.hour,
        "minute": local.minute,
        "weekday": WEEKDAY_NAMES[local.weekday()],
        "abbreviation": local.tzname(),
    }


def format_clock(local: datetime) -> str:
    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{hour}:{local.minute:02d} {meridiem}"


def format_for_display(instant: datetime, tz_name: str) -> str:
    """e.g. ``Monday, January 5 at 10:30 AM EST``"""
    local = to_local(instant, tz_name)
    return f"{local:%A, %B} {local.day} at {format_clock(local)} {local.tzname()}"


def local_datetime(day: date, clock: time, tz_name: str) -> datetime:
    """UTC instant for a wall-clock time on ``day`` in ``tz_name``."""
    return datetime.combine(day, clock, tzinfo=get_zone(tz_name)).astimezone(timezone.utc)


def infer_year(month: int, day: int, reference: date) -> int:
    """Year for a month/day written without one.

    Dates earlier in the calendar than the reference date roll into next
    year, so "January 8" written on December 20 means next January.
    """
    if (month, day) < (reference.month, reference.day):
        return reference.year + 1
    return reference.year


@dataclass(frozen=True)
class DateContext:
    reference_local: datetime
    timezone: str
    abbreviation: str
    year_guidance: str

    def describe(self) -> str:
        ref = self.reference_local
        return (
            f"The reply was received on {ref:%A, %B} {ref.day}, {ref.year} at "
            f"{format_clock(ref)} {self.abbreviation} ({self.timezone}). "
            f"Resolve relative expressions such as 'tomorrow' or 'next Monday' from that moment. "
            f"{self.year_guidance}"
        )


def build_date_context(reference_instant: datetime, tz_name: str) -> DateContext:
    local = to_local(reference_instant, tz_name)
    if local.month == 12:
        guidance = (
            f"Month names January through March without a year refer to {local.year + 1}."
        )
    else:
        guidance = (
            f"Dates without a year refer to {local.year} unless that date has already "
            f"passed, in which case they refer to {local.year + 1}."
        )
    return DateContext(
        reference_local=local,
        timezone=normalize_timezone(tz_name),
        abbreviation=local.tzname() or "",
        year_guidance=guidance,
    )


def _nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def _last_weekday(year: int, month: int, weekday: int) -> date:
    following = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    last = following - timedelta(days=1)
    return last - timedelta(days=(last.weekday() - weekday) % 7)


def _observed(day: date) -> date:
    if day.weekday() == 5:
        return day - timedelta(days=1)
    if day.weekday() == 6:
        return day + timedelta(days=1)
    return day


def us_holidays(year: int) -> dict[date, str]:
    """US federal holidays for ``year``, fixed-date ones moved to their observed weekday."""
    holidays = {
        _observed(date(year, 1, 1)): "New Year's Day",
        _nth_weekday(year, 1, 0, 3): "Martin Luther King Jr. Day",
        _nth_weekday(year, 2, 0, 3): "Presidents' Day",
        _last_weekday(year, 5, 0): "Memorial Day",
        _observed(date(year, 6, 19)): "Juneteenth",
        _observed(date(year, 7, 4)): "Independence Day",
        _nth_weekday(year, 9, 0, 1): "Labor Day",
        _nth_weekday(year, 10, 0, 2): "Columbus Day",
        _observed(date(year, 11, 11)): "Veterans Day",
        _nth_weekday(year, 11, 3, 4): "Thanksgiving Day",
        _observed(date(year, 12, 25)): "Christmas Day",
    }
    return holidays


def holiday_name(day: date) -> str | None:
    return us_holidays(day.year).get(day)
