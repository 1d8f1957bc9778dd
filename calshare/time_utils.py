from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo


def _configured_tz() -> tzinfo:
    """Return the timezone configured for the application."""
    tz_name = os.getenv("CALSHARE_TZ")
    if tz_name:
        return ZoneInfo(tz_name)
    system_tz = datetime.now().astimezone().tzinfo
    return system_tz if system_tz is not None else ZoneInfo("UTC")


def get_now() -> datetime:
    """Return the current time in the configured timezone.

    Uses the ``CALSHARE_TZ`` environment variable if set, otherwise
    defaults to the system timezone.
    """
    return datetime.now(_configured_tz())


def parse_datetime(value: str) -> datetime:
    """Parse an ISO formatted datetime string.

    If ``value`` lacks timezone information, apply the timezone configured
    via ``CALSHARE_TZ`` (default system timezone).  If ``value`` already
    includes timezone information, convert it into the configured timezone so
    that day boundaries are computed in local time.
    """
    return ensure_tz(datetime.fromisoformat(value))


def ensure_tz(dt: datetime | None) -> datetime | None:
    """Ensure ``dt`` is timezone-aware using the configured timezone."""
    if dt is None:
        return None

    tz = _configured_tz()
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    if dt.tzinfo == tz:
        return dt
    return dt.astimezone(tz)


def local_date(dt: datetime) -> date:
    """Return the calendar date of ``dt`` in the configured timezone."""
    return ensure_tz(dt).date()


def to_utc(dt: datetime) -> datetime:
    """Return ``dt`` as an aware UTC datetime.

    Aware datetimes sharing one zone compare by wall time and ignore
    ``fold``, so instants in a repeated hour must be compared in UTC.
    """
    return ensure_tz(dt).astimezone(timezone.utc)


@dataclass
class TimeRange:
    """Half-open interval ``[start, end)``."""

    start: datetime
    end: datetime


def _as_date(day: date | datetime) -> date:
    if isinstance(day, datetime):
        return local_date(day)
    return day


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time(0), tzinfo=_configured_tz())


def day_bounds(day: date | datetime) -> TimeRange:
    d = _as_date(day)
    return TimeRange(_midnight(d), _midnight(d + timedelta(days=1)))


def _week_start(d: date, week_starts_on: int) -> date:
    # ``week_starts_on`` counts from Sunday (0) while ``weekday()`` counts
    # from Monday (0).
    sunday_based = (d.weekday() + 1) % 7
    return d - timedelta(days=(sunday_based - week_starts_on) % 7)


def week_bounds(day: date | datetime, week_starts_on: int = 0) -> TimeRange:
    """Return the 7-day window containing ``day``.

    ``week_starts_on`` selects the first weekday, 0 being Sunday.
    """
    start = _week_start(_as_date(day), week_starts_on)
    return TimeRange(_midnight(start), _midnight(start + timedelta(days=7)))


def month_grid_bounds(day: date | datetime, week_starts_on: int = 0) -> TimeRange:
    """Return the range displayed by a month grid for ``day``'s month.

    The range starts on the first day of the week containing the first of
    the month and ends after the week containing the last of the month, so
    it always spans whole weeks (5 or 6 rows, occasionally 4 for February).
    """
    d = _as_date(day)
    first = d.replace(day=1)
    if first.month == 12:
        next_first = first.replace(year=first.year + 1, month=1)
    else:
        next_first = first.replace(month=first.month + 1)
    last = next_first - timedelta(days=1)
    start = _week_start(first, week_starts_on)
    end = _week_start(last, week_starts_on) + timedelta(days=7)
    return TimeRange(_midnight(start), _midnight(end))


def days_in_range(time_range: TimeRange) -> list[date]:
    days: list[date] = []
    current = local_date(time_range.start)
    last = local_date(time_range.end)
    while current < last:
        days.append(current)
        current += timedelta(days=1)
    return days


def hour_offset(instant: datetime) -> float:
    """Return hours since local midnight, with minutes as a fraction."""
    local = ensure_tz(instant)
    return local.hour + local.minute / 60
