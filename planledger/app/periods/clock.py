"""Time helpers shared by every service that needs a notion of "now"."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional, Union

Clock = Callable[[], datetime]


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""

    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def current_time(clock: Optional[Clock] = None) -> datetime:
    if clock is None:
        return datetime.now(timezone.utc)
    return ensure_aware(clock())


def parse_datetime(value: Union[datetime, str]) -> datetime:
    if isinstance(value, datetime):
        return ensure_aware(value)
    if isinstance(value, str):
        return ensure_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise TypeError("Unsupported datetime value")


def parse_optional_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    return parse_datetime(value)  # type: ignore[arg-type]


__all__ = ["Clock", "current_time", "ensure_aware", "parse_datetime", "parse_optional_datetime"]
