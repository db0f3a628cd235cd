"""Errors raised while computing billing and reset periods."""
from __future__ import annotations

from datetime import datetime
from typing import Optional


class InvalidIntervalError(ValueError):
    """Raised when an interval type is unknown or its count is not positive."""

    def __init__(self, interval_type: object, count: object, message: Optional[str] = None) -> None:
        self.interval_type = interval_type
        self.count = count
        super().__init__(
            message
            or f"Invalid interval {count!r} x {interval_type!r}: type must be one of "
            "[day, week, month, year] and count must be >= 1"
        )


class InvalidPeriodError(ValueError):
    """Raised when a start date falls after its end date."""

    def __init__(self, starts_at: datetime, ends_at: datetime) -> None:
        self.starts_at = starts_at
        self.ends_at = ends_at
        super().__init__(
            f"The starts_at [{starts_at.isoformat()}] must not be after the ends_at [{ends_at.isoformat()}]"
        )


class NoResetIntervalError(ValueError):
    """Raised when a reset date is requested for a feature that never resets."""

    def __init__(self, feature_slug: str) -> None:
        self.feature_slug = feature_slug
        super().__init__(f"Feature '{feature_slug}' has no reset interval")


__all__ = ["InvalidIntervalError", "InvalidPeriodError", "NoResetIntervalError"]
