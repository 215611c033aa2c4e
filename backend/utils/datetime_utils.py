"""
Datetime helpers shared by the auto-link gates and the apportionment engine.

All engine arithmetic happens on timezone-aware UTC datetimes; naive values
coming out of the database or a payload are assumed to be UTC.
"""
from datetime import date, datetime, timezone
from typing import Optional, Union
import logging

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
SECONDS_PER_HOUR = 3600


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def ensure_utc(value) -> Optional[datetime]:
    """
    Coerce a datetime-ish value to an aware UTC datetime.

    Handles:
    - None -> None
    - aware datetime -> converted to UTC
    - naive datetime -> assumed UTC
    - date -> midnight UTC
    - ISO string (with or without trailing Z) -> parsed
    - Other -> None with warning
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.strip().replace('Z', '+00:00')))
        except ValueError as e:
            logger.warning(f"Failed to parse datetime string '{value}': {e}")
            return None

    logger.warning(f"Cannot convert {type(value)} to datetime: {value}")
    return None


def days_between(start: datetime, end: datetime) -> float:
    """Fractional days from start to end (negative if end precedes start)"""
    return (end - start).total_seconds() / SECONDS_PER_DAY


def hours_between(start: datetime, end: datetime) -> float:
    """Fractional hours from start to end"""
    return (end - start).total_seconds() / SECONDS_PER_HOUR


def month_start(value: Union[date, datetime]) -> date:
    """First day of the calendar month containing value"""
    if isinstance(value, datetime):
        value = ensure_utc(value)
    return date(value.year, value.month, 1)


def next_month_start(month: date) -> date:
    """First day of the month after `month`"""
    if month.month == 12:
        return date(month.year + 1, 1, 1)
    return date(month.year, month.month + 1, 1)


def month_end(month: date) -> datetime:
    """
    End of the calendar month as an aware datetime.

    Defined as the first instant of the following month, so an item created
    at the last second of the month is aged zero days, not negative.
    """
    nxt = next_month_start(month)
    return datetime(nxt.year, nxt.month, 1, tzinfo=timezone.utc)


def parse_month(value) -> Optional[date]:
    """
    Normalise a month value to a first-of-month date.

    Accepts date/datetime, 'YYYY-MM' and 'YYYY-MM-DD' strings.
    Returns None when the value cannot be understood.
    """
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return month_start(value)
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 7:
            text = f"{text}-01"
        try:
            return month_start(date.fromisoformat(text[:10]))
        except ValueError:
            return None
    return None
