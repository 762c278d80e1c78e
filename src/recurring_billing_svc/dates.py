"""
UTC date helpers shared by the record, the calculator and the scheduler.

Every instant handled by the engine is an aware ``datetime`` in UTC with
second precision. Strings are stored as ``YYYY-MM-DD HH:MM:SS`` in UTC.
"""
import datetime
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

UTC = datetime.timezone.utc
STORAGE_FORMAT = '%Y-%m-%d %H:%M:%S'
EMPTY_DATE_STRINGS = ('', '0', '0000-00-00 00:00:00')

PERIODS = ('day', 'week', 'month', 'year')
PERIOD_ALIASES = {
    'days': 'day',
    'daily': 'day',
    'weeks': 'week',
    'weekly': 'week',
    'months': 'month',
    'monthly': 'month',
    'years': 'year',
    'yearly': 'year',
}

DateInput = Union[datetime.datetime, datetime.date, int, float, str, None]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(UTC).replace(microsecond=0)


def to_utc(value: DateInput) -> Optional[datetime.datetime]:
    """
    Normalize a date value to an aware UTC datetime.

    Naive datetimes and timezone-less strings are taken to be UTC already.
    Empty values (None, 0, '', '0000-00-00 00:00:00') return None.

    :raises ValueError: if a string cannot be parsed.
    """
    if value is None or value is False:
        return None
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).replace(microsecond=0)
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        return datetime.datetime.fromtimestamp(int(value), UTC)
    if isinstance(value, str):
        return parse_utc(value)
    raise ValueError(f"Unsupported date value: {value!r}")


def parse_utc(text: str) -> Optional[datetime.datetime]:
    text = text.strip()
    if text in EMPTY_DATE_STRINGS:
        return None
    if text.isdigit():
        return to_utc(int(text))
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.datetime.fromisoformat(text)
    except ValueError:
        parsed = datetime.datetime.strptime(text, STORAGE_FORMAT)
    return to_utc(parsed)


def format_utc(value: Optional[datetime.datetime]) -> str:
    if value is None:
        return ''
    return to_utc(value).strftime(STORAGE_FORMAT)


def to_timestamp(value: DateInput) -> Optional[int]:
    value = to_utc(value)
    if value is None:
        return None
    return int(value.timestamp())


def normalize_period(unit: Optional[str]) -> str:
    if unit in PERIODS:
        return unit
    return PERIOD_ALIASES.get((unit or '').lower(), 'month')


def add_period(value: datetime.datetime, count: int, unit: str) -> datetime.datetime:
    """
    Add ``count`` billing periods to ``value``.

    Month and year additions clamp to the last valid day of the target month,
    so Jan 31 + 1 month is Feb 28 (or 29).
    """
    unit = normalize_period(unit)
    if count <= 0:
        return value
    if unit == 'day':
        return value + datetime.timedelta(days=count)
    if unit == 'week':
        return value + datetime.timedelta(weeks=count)
    if unit == 'month':
        return value + relativedelta(months=count)
    return value + relativedelta(years=count)
