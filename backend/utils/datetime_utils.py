from datetime import datetime, date, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_for_tz(tz_name: str | None) -> datetime:
    """Return the current wall-clock time in the given timezone (UTC fallback)."""
    if tz_name:
        try:
            return datetime.now(ZoneInfo(tz_name))
        except ZoneInfoNotFoundError:
            pass
    return utcnow()


def today_for_tz(tz_name: str | None) -> date:
    """Return today's date in the installation timezone."""
    return now_for_tz(tz_name).date()


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def date_range(start: date, end: date) -> list[date]:
    """Inclusive list of dates from start to end."""
    if end < start:
        return []
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def sunday_based_weekday(d: date) -> int:
    """Weekday where 0 = Sunday ... 6 = Saturday."""
    return (d.weekday() + 1) % 7
