"""
Unit Tests - Period Resolver
"""
from datetime import date, datetime, timedelta, timezone

import pytest

from sales_aggregation.aggregation.periods import (
    GRANULARITIES,
    Granularity,
    period_from_key,
    resolve,
    resolve_all,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestResolve:
    """Tests for resolve"""

    def test_daily_key_and_range(self):
        """Test a daily period is the UTC calendar day"""
        period = resolve(utc(2025, 3, 15, 23, 59, 59), Granularity.DAILY)

        assert period.key == "2025-03-15"
        assert period.start == utc(2025, 3, 15)
        assert period.end == utc(2025, 3, 16)

    def test_same_day_events_share_bucket(self):
        """Test two instants of one day resolve to the same key"""
        morning = resolve(utc(2025, 3, 15, 0, 0), "daily")
        night = resolve(utc(2025, 3, 15, 23, 59, 59, 999999), "daily")

        assert morning == night

    def test_month_boundary(self):
        """Test Jan 31 and Feb 1 fall in different daily and monthly buckets"""
        jan = utc(2025, 1, 31, 23, 0)
        feb = utc(2025, 2, 1, 1, 0)

        assert resolve(jan, Granularity.DAILY).key == "2025-01-31"
        assert resolve(feb, Granularity.DAILY).key == "2025-02-01"
        assert resolve(jan, Granularity.MONTHLY).key == "2025-01"
        assert resolve(feb, Granularity.MONTHLY).key == "2025-02"
        assert resolve(jan, Granularity.YEARLY) == resolve(feb, Granularity.YEARLY)

    def test_december_month_ends_next_year(self):
        """Test the December range ends on January 1st of the next year"""
        period = resolve(utc(2025, 12, 31, 12), Granularity.MONTHLY)

        assert period.key == "2025-12"
        assert period.end == utc(2026, 1, 1)

    def test_iso_week_across_new_year(self):
        """Test Dec 29 2025 and Jan 2 2026 share ISO week 2026-W01"""
        monday = resolve(utc(2025, 12, 29, 9), Granularity.WEEKLY)
        friday = resolve(utc(2026, 1, 2, 18), Granularity.WEEKLY)

        assert monday.key == "2026-W01"
        assert monday == friday
        assert monday.start == utc(2025, 12, 29)
        assert monday.end == utc(2026, 1, 5)

    def test_week_key_agrees_with_range(self):
        """Test the last days of 2024 map to the ISO week containing them"""
        period = resolve(utc(2024, 12, 31), Granularity.WEEKLY)

        assert period.key == "2025-W01"
        assert period.start == utc(2024, 12, 30)

    def test_week_starts_on_monday(self):
        """Test Sunday belongs to the week of the preceding Monday"""
        sunday = resolve(utc(2025, 3, 16, 23), Granularity.WEEKLY)

        assert sunday.start.weekday() == 0
        assert sunday.start == utc(2025, 3, 10)

    def test_timezone_normalized_to_utc(self):
        """Test offsets are converted before bucketing"""
        late_evening_new_york = datetime(2025, 3, 15, 22, 0, tzinfo=timezone(timedelta(hours=-5)))

        assert resolve(late_evening_new_york, Granularity.DAILY).key == "2025-03-16"

    def test_naive_timestamp_treated_as_utc(self):
        """Test naive datetimes are taken as UTC"""
        assert resolve(datetime(2025, 3, 15, 23, 30), "daily").key == "2025-03-15"

    def test_plain_date(self):
        """Test dates resolve like midnight UTC"""
        assert resolve(date(2025, 7, 4), Granularity.YEARLY).key == "2025"

    def test_end_is_exclusive(self):
        """Test the next period's first instant is not contained"""
        period = resolve(utc(2025, 3, 15), Granularity.DAILY)

        assert period.contains(utc(2025, 3, 15))
        assert not period.contains(utc(2025, 3, 16))

    def test_unknown_granularity_rejected(self):
        """Test invalid granularities raise"""
        with pytest.raises(ValueError):
            resolve(utc(2025, 3, 15), "quarterly")


class TestResolveAll:
    """Tests for resolve_all"""

    def test_one_period_per_granularity(self):
        """Test every granularity is resolved, finest first"""
        periods = resolve_all(utc(2025, 3, 15, 10))

        assert [p.granularity for p in periods] == list(GRANULARITIES)
        assert [p.key for p in periods] == ["2025-03-15", "2025-W11", "2025-03", "2025"]


class TestPeriodFromKey:
    """Tests for period_from_key"""

    @pytest.mark.parametrize(
        "granularity,key,start",
        [
            (Granularity.DAILY, "2025-03-15", utc(2025, 3, 15)),
            (Granularity.WEEKLY, "2026-W01", utc(2025, 12, 29)),
            (Granularity.MONTHLY, "2025-02", utc(2025, 2, 1)),
            (Granularity.YEARLY, "2025", utc(2025, 1, 1)),
        ],
    )
    def test_canonical_keys(self, granularity, key, start):
        """Test canonical keys parse back to their period"""
        period = period_from_key(granularity, key)

        assert period.key == key
        assert period.start == start

    @pytest.mark.parametrize(
        "granularity,key",
        [
            (Granularity.DAILY, "2025-3-15"),
            (Granularity.WEEKLY, "2025-W1"),
            (Granularity.WEEKLY, "2025-W54"),
            (Granularity.MONTHLY, "2025-13"),
            (Granularity.YEARLY, "twenty"),
        ],
    )
    def test_non_canonical_keys_rejected(self, granularity, key):
        """Test malformed keys raise ValueError"""
        with pytest.raises(ValueError):
            period_from_key(granularity, key)
