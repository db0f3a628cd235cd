"""Subscription records and their derived lifecycle status."""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..periods import InvalidPeriodError, Period, ensure_aware


class SubscriptionStatus(str, Enum):
    """Derived, priority ordered reading of a subscription's timestamps."""

    NOT_STARTED = "not_started"
    TRIALING = "trialing"
    ACTIVE = "active"
    ON_GRACE = "on_grace"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    ENDED = "ended"


class SubscriberRef(BaseModel):
    """Tagged reference to the entity owning a subscription, e.g. ``user:42``."""

    kind: str = Field(min_length=1)
    id: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, (int, str)) and not isinstance(value, bool):
            return str(value)
        return value

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


class SubscriberDirectory:
    """Resolves subscriber references through lookups registered per kind."""

    def __init__(self) -> None:
        self._lookups: Dict[str, Callable[[str], Any]] = {}

    def register(self, kind: str, lookup: Callable[[str], Any]) -> None:
        self._lookups[kind] = lookup

    def kinds(self) -> tuple:
        return tuple(sorted(self._lookups))

    def resolve(self, ref: SubscriberRef) -> Any:
        try:
            lookup = self._lookups[ref.kind]
        except KeyError as exc:
            raise LookupError(f"No subscriber lookup registered for kind '{ref.kind}'") from exc
        return lookup(ref.id)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription(BaseModel):
    """A plan bound to one subscriber with its own start, end, trial, grace and cancel dates.

    Records are mutable: lifecycle operations update the dates in place and
    persist the result. ``starts_at`` must never be after ``ends_at``.
    """

    id: Optional[int] = None
    slug: str = Field(min_length=1)
    name: str
    plan_id: int
    subscriber: SubscriberRef
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None
    cancels_at: Optional[datetime] = None
    plan_changed_at: Optional[datetime] = None
    timezone: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True)

    def __init__(self, **data: Any) -> None:
        super().__init__(**data)
        # checked outside validation so the error stays an InvalidPeriodError, not a ValidationError
        self.check_period()

    @field_validator(
        "starts_at",
        "ends_at",
        "trial_ends_at",
        "grace_ends_at",
        "cancels_at",
        "plan_changed_at",
        "created_at",
        "updated_at",
        "deleted_at",
    )
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value) if value is not None else None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    def check_period(self) -> None:
        if self.starts_at is not None and self.ends_at is not None and self.starts_at > self.ends_at:
            raise InvalidPeriodError(self.starts_at, self.ends_at)

    def apply_period(self, period: Period) -> "Subscription":
        """Move the billing window to ``period`` in memory."""

        self.starts_at = period.start_date
        self.ends_at = period.end_date
        return self

    def local_date(self, value: datetime) -> date:
        """Calendar date of ``value`` in the subscription's timezone (UTC when unset)."""

        zone = ZoneInfo(self.timezone) if self.timezone else timezone.utc
        return ensure_aware(value).astimezone(zone).date()

    def started(self, now: Optional[datetime] = None) -> bool:
        if self.starts_at is None:
            return False
        return self.starts_at <= _reference(now)

    def not_started(self, now: Optional[datetime] = None) -> bool:
        return not self.started(now)

    def is_ended(self, now: Optional[datetime] = None) -> bool:
        if self.ends_at is None:
            return False
        return self.ends_at < _reference(now)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        moment = _reference(now)
        if self.grace_ends_at is not None:
            return self.is_ended(moment) and self.grace_ends_at < moment
        return self.is_ended(moment)

    def is_on_grace_period(self, now: Optional[datetime] = None) -> bool:
        moment = _reference(now)
        return self.grace_ends_at is not None and self.is_ended(moment) and self.grace_ends_at > moment

    def on_trial(self, now: Optional[datetime] = None) -> bool:
        return self.trial_ends_at is not None and self.trial_ends_at > _reference(now)

    def is_cancelled(self) -> bool:
        return self.cancels_at is not None

    def is_cancelled_immediately(self) -> bool:
        if self.cancels_at is None or self.ends_at is None:
            return False
        return self.local_date(self.cancels_at) == self.local_date(self.ends_at)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not (self.is_ended(now) or self.is_cancelled_immediately())

    def is_inactive(self, now: Optional[datetime] = None) -> bool:
        return not self.is_active(now)

    def status(self, now: Optional[datetime] = None) -> SubscriptionStatus:
        moment = _reference(now)
        if self.is_cancelled():
            return SubscriptionStatus.CANCELLED
        if self.is_overdue(moment):
            return SubscriptionStatus.OVERDUE
        if self.is_on_grace_period(moment):
            return SubscriptionStatus.ON_GRACE
        if self.is_ended(moment):
            return SubscriptionStatus.ENDED
        if self.not_started(moment):
            return SubscriptionStatus.NOT_STARTED
        if self.on_trial(moment):
            return SubscriptionStatus.TRIALING
        return SubscriptionStatus.ACTIVE


def _reference(now: Optional[datetime]) -> datetime:
    return ensure_aware(now) if now is not None else _utcnow()


__all__ = ["SubscriberDirectory", "SubscriberRef", "Subscription", "SubscriptionStatus"]
