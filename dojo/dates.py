from datetime import date, datetime, timezone
from dateutil import tz
from dateutil.parser import isoparse

from dojo import config


def local_today() -> date:
    """Today's date in the school's timezone."""
    return datetime.now(tz.gettz(config.TIMEZONE)).date()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_date(value):
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return isoparse(str(value)).date()


def as_datetime(value):
    """Parse a timestamp; naive values are taken as UTC."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = isoparse(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_age(birth_date, today=None):
    """Whole years since birth_date, or None when unknown."""
    birth_date = as_date(birth_date)
    if birth_date is None:
        return None
    today = today or local_today()
    age = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age
