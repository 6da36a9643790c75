"""Unit tests for business-day arithmetic."""

from datetime import date, datetime, timezone

from src.utils.business_days import (
    NEVER_REPLIED_DAYS,
    business_days_between,
    business_days_since,
)


class TestBusinessDaysBetween:
    def test_friday_to_monday_is_one_day(self):
        assert business_days_between(date(2024, 6, 14), date(2024, 6, 17)) == 1

    def test_ten_calendar_days_spanning_weekend(self):
        # Fri 7th -> Mon 17th
        assert business_days_between(date(2024, 6, 7), date(2024, 6, 17)) == 6

    def test_two_full_weeks(self):
        assert business_days_between(date(2024, 6, 3), date(2024, 6, 17)) == 10

    def test_weekend_only_range(self):
        assert business_days_between(date(2024, 6, 15), date(2024, 6, 17)) == 0

    def test_same_day(self):
        assert business_days_between(date(2024, 6, 17), date(2024, 6, 17)) == 0

    def test_reversed_range(self):
        assert business_days_between(date(2024, 6, 17), date(2024, 6, 10)) == 0

    def test_timestamps_truncated_to_dates(self):
        late_friday = datetime(2024, 6, 14, 23, 59, tzinfo=timezone.utc)
        early_monday = datetime(2024, 6, 17, 0, 1, tzinfo=timezone.utc)
        assert business_days_between(late_friday, early_monday) == 1


class TestBusinessDaysSince:
    def test_never_replied(self):
        assert business_days_since(None, date(2024, 6, 17)) == NEVER_REPLIED_DAYS
        assert NEVER_REPLIED_DAYS == 2 ** 31 - 1

    def test_with_reply(self):
        assert business_days_since(datetime(2024, 6, 11, 10, 0), date(2024, 6, 17)) == 4
