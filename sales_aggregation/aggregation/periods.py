"""
Period Resolver

Maps a timestamp onto the canonical bucket of each rollup granularity.

All periods are computed in UTC and expressed as half-open ``[start, end)``
ranges. Weeks follow ISO-8601: they start on Monday and are numbered within
the ISO week-year, so the key and the range of a week always agree, including
around the new year (Monday 2025-12-29 belongs to ``2026-W01``).
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import List, Union


class Granularity(str, Enum):
    """Rollup resolutions"""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


GRANULARITIES = (
    Granularity.DAILY,
    Granularity.WEEKLY,
    Granularity.MONTHLY,
    Granularity.YEARLY,
)


@dataclass(frozen=True, order=True)
class PeriodKey:
    """One canonical period of a granularity"""
    granularity: Granularity
    key: str
    start: datetime
    end: datetime

    def contains(self, timestamp: datetime) -> bool:
        return self.start <= _as_utc(timestamp) < self.end


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _first_of_next_month(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1)
    return date(year, month + 1, 1)


def _daily(day: date) -> PeriodKey:
    return PeriodKey(
        granularity=Granularity.DAILY,
        key=day.isoformat(),
        start=_midnight(day),
        end=_midnight(day + timedelta(days=1)),
    )


def _weekly(day: date) -> PeriodKey:
    iso_year, iso_week, iso_weekday = day.isocalendar()
    monday = day - timedelta(days=iso_weekday - 1)
    return PeriodKey(
        granularity=Granularity.WEEKLY,
        key=f"{iso_year}-W{iso_week:02d}",
        start=_midnight(monday),
        end=_midnight(monday + timedelta(days=7)),
    )


def _monthly(year: int, month: int) -> PeriodKey:
    return PeriodKey(
        granularity=Granularity.MONTHLY,
        key=f"{year:04d}-{month:02d}",
        start=_midnight(date(year, month, 1)),
        end=_midnight(_first_of_next_month(year, month)),
    )


def _yearly(year: int) -> PeriodKey:
    return PeriodKey(
        granularity=Granularity.YEARLY,
        key=f"{year:04d}",
        start=_midnight(date(year, 1, 1)),
        end=_midnight(date(year + 1, 1, 1)),
    )


def resolve(timestamp: Union[datetime, date], granularity: Union[Granularity, str]) -> PeriodKey:
    """
    Resolve the period of ``granularity`` containing ``timestamp``.

    Args:
        timestamp: Instant to bucket; naive datetimes and plain dates are UTC
        granularity: One of the four rollup resolutions

    Returns:
        PeriodKey: Canonical key and half-open UTC range
    """
    granularity = Granularity(granularity)
    if isinstance(timestamp, datetime):
        day = _as_utc(timestamp).date()
    else:
        day = timestamp

    if granularity is Granularity.DAILY:
        return _daily(day)
    if granularity is Granularity.WEEKLY:
        return _weekly(day)
    if granularity is Granularity.MONTHLY:
        return _monthly(day.year, day.month)
    return _yearly(day.year)


def resolve_all(timestamp: Union[datetime, date]) -> List[PeriodKey]:
    """Resolve ``timestamp`` at every granularity, finest first."""
    return [resolve(timestamp, granularity) for granularity in GRANULARITIES]


def period_from_key(granularity: Union[Granularity, str], key: str) -> PeriodKey:
    """
    Parse a canonical period key back into its PeriodKey.

    Raises:
        ValueError: If ``key`` is not canonical for ``granularity``
    """
    granularity = Granularity(granularity)
    try:
        if granularity is Granularity.DAILY:
            day = date.fromisoformat(key)
        elif granularity is Granularity.WEEKLY:
            year_part, week_part = key.split("-W")
            day = date.fromisocalendar(int(year_part), int(week_part), 1)
        elif granularity is Granularity.MONTHLY:
            year_part, month_part = key.split("-")
            day = date(int(year_part), int(month_part), 1)
        else:
            day = date(int(key), 1, 1)
    except ValueError as e:
        raise ValueError(f"Invalid {granularity.value} period key: {key!r}") from e

    period = resolve(day, granularity)
    if period.key != key:
        raise ValueError(f"Invalid {granularity.value} period key: {key!r}")
    return period
