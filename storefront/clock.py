import datetime as dt
from typing import Optional


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Normalize a datetime coming back from the database to aware UTC.

    Some drivers (sqlite) hand back naive values for timezone-aware columns.
    Comparing aware and naive datetimes raises TypeError, so everything that
    compares timestamps goes through here first.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def isoformat_z(value: Optional[dt.datetime]) -> Optional[str]:
    value = as_utc(value)
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")
