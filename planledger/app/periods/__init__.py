"""Period arithmetic for recurring billing windows."""

from .clock import Clock, current_time, ensure_aware, parse_datetime, parse_optional_datetime
from .exceptions import InvalidIntervalError, InvalidPeriodError, NoResetIntervalError
from .models import Interval, IntervalType, Period, compute_period, period_for

__all__ = [
    "Clock",
    "current_time",
    "ensure_aware",
    "parse_datetime",
    "parse_optional_datetime",
    "InvalidIntervalError",
    "InvalidPeriodError",
    "NoResetIntervalError",
    "Interval",
    "IntervalType",
    "Period",
    "compute_period",
    "period_for",
]
