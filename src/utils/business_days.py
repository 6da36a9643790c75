"""Business-day arithmetic (Saturdays and Sundays excluded)."""

from datetime import date, datetime, timedelta

# Reported when a campaign or account has never had a qualifying reply
NEVER_REPLIED_DAYS = 2 ** 31 - 1


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def business_days_between(start: date | datetime, end: date | datetime) -> int:
    """Count weekdays in the half-open day range [start, end).

    Timestamps are truncated to their calendar date. Returns 0 when
    ``start`` is not before ``end``.

    A reply on a Friday checked the following Monday is 1 business day old.
    """
    start_day = _as_date(start)
    end_day = _as_date(end)
    if start_day >= end_day:
        return 0

    total_days = (end_day - start_day).days
    full_weeks, remainder = divmod(total_days, 7)
    count = full_weeks * 5

    day = start_day + timedelta(days=full_weeks * 7)
    for _ in range(remainder):
        if day.weekday() < 5:
            count += 1
        day += timedelta(days=1)
    return count


def business_days_since(last: date | datetime | None, today: date | datetime) -> int:
    """Business days from ``last`` to ``today``; NEVER_REPLIED_DAYS if ``last`` is None."""
    if last is None:
        return NEVER_REPLIED_DAYS
    return business_days_between(last, today)
