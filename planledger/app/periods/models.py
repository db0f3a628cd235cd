"""Interval and period value types used for billing cycles, trials and resets."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from .clock import Clock, current_time, parse_datetime
from .exceptions import InvalidIntervalError


class IntervalType(str, Enum):
    """Calendar units a recurrence can be expressed in."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


def _coerce_interval_type(interval_type: object, count: object) -> IntervalType:
    try:
        return IntervalType(interval_type)
    except ValueError as exc:
        raise InvalidIntervalError(interval_type, count) from exc


def _validate_count(interval_type: object, count: object) -> int:
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise InvalidIntervalError(interval_type, count)
    return count


@dataclass(frozen=True)
class Interval:
    """A positive number of calendar units, e.g. ``2 x week``."""

    interval_type: IntervalType
    count: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "interval_type", _coerce_interval_type(self.interval_type, self.count))
        object.__setattr__(self, "count", _validate_count(self.interval_type, self.count))

    def as_relativedelta(self) -> relativedelta:
        unit = {
            IntervalType.DAY: "days",
            IntervalType.WEEK: "weeks",
            IntervalType.MONTH: "months",
            IntervalType.YEAR: "years",
        }[self.interval_type]
        return relativedelta(**{unit: self.count})

    @classmethod
    def optional(cls, interval_type: object, count: object) -> Optional["Interval"]:
        """Build an interval from nullable storage columns.

        Both columns must be filled for the interval to exist; a zero count is
        stored for "no interval" and maps to ``None``.
        """

        if not interval_type or not count:
            return None
        return cls(interval_type, count)  # type: ignore[arg-type]

    def __str__(self) -> str:
        return f"{self.count} {self.interval_type.value}"


@dataclass(frozen=True)
class Period:
    """Immutable start/end pair produced by :func:`compute_period`."""

    interval_type: IntervalType
    count: int
    start_date: datetime
    end_date: datetime

    @property
    def interval(self) -> Interval:
        return Interval(self.interval_type, self.count)


def compute_period(
    interval_type: Union[IntervalType, str] = IntervalType.MONTH,
    count: int = 1,
    anchor: Optional[Union[datetime, str]] = None,
    *,
    clock: Optional[Clock] = None,
) -> Period:
    """Return the period starting at ``anchor`` and lasting ``count`` units.

    ``anchor`` defaults to the current time. Month and year arithmetic is
    calendar aware: one month after January 31st is the last day of February.
    """

    interval = Interval(interval_type, count)  # type: ignore[arg-type]
    start_date = current_time(clock) if anchor is None or anchor == "" else parse_datetime(anchor)
    end_date = start_date + interval.as_relativedelta()
    return Period(
        interval_type=interval.interval_type,
        count=interval.count,
        start_date=start_date,
        end_date=end_date,
    )


def period_for(interval: Interval, anchor: Optional[datetime] = None, *, clock: Optional[Clock] = None) -> Period:
    return compute_period(interval.interval_type, interval.count, anchor, clock=clock)


__all__ = ["Interval", "IntervalType", "Period", "compute_period", "period_for"]
