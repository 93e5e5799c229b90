"""Date filter helpers shared by the audit and batch read side."""

from datetime import date, datetime, time, timedelta, timezone


def to_utc_bound(value: date | datetime | None, *, end: bool) -> datetime | None:
    """Turn a date filter into an aware datetime bound.

    A plain date as ``end`` means "through the end of that day"; the returned
    bound is then exclusive.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    bound = datetime.combine(value, time.min, tzinfo=timezone.utc)
    return bound + timedelta(days=1) if end else bound
