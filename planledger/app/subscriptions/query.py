"""Explicit, composable filters for listing subscriptions."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Tuple

from ..periods import ensure_aware
from .models import SubscriberRef, Subscription


@dataclass(frozen=True)
class SubscriptionQuery:
    """Filters applied when listing subscriptions.

    Nothing is hidden by default: cancelled, ended and not yet started
    subscriptions are all returned unless excluded explicitly. The ``include_*``
    flags and ``only_not_active`` are evaluated against ``now``.
    """

    subscriber: Optional[SubscriberRef] = None
    plan_ids: Tuple[int, ...] = ()
    include_cancelled: bool = True
    include_ended: bool = True
    include_not_started: bool = True
    only_not_active: bool = False
    ends_after: Optional[datetime] = None
    ends_before: Optional[datetime] = None
    trial_ends_after: Optional[datetime] = None
    trial_ends_before: Optional[datetime] = None
    grace_ends_after: Optional[datetime] = None
    grace_ends_before: Optional[datetime] = None
    now: Optional[datetime] = None
    newest_first: bool = True
    limit: Optional[int] = None

    def at(self, now: datetime) -> "SubscriptionQuery":
        return replace(self, now=now)

    def matches(self, subscription: Subscription, now: datetime) -> bool:
        """Evaluate the filters in memory; mirrors the SQL built by the Postgres repository."""

        moment = ensure_aware(self.now or now)
        if self.subscriber is not None and subscription.subscriber != self.subscriber:
            return False
        if self.plan_ids and subscription.plan_id not in self.plan_ids:
            return False
        if not self.include_cancelled and subscription.cancels_at is not None:
            return False
        ended = subscription.ends_at is not None and subscription.ends_at <= moment
        not_started = subscription.starts_at is None or subscription.starts_at > moment
        if not self.include_ended and ended:
            return False
        if not self.include_not_started and not_started:
            return False
        if self.only_not_active and not (ended or not_started or subscription.cancels_at is not None):
            return False
        return (
            _within(subscription.ends_at, self.ends_after, self.ends_before)
            and _within(subscription.trial_ends_at, self.trial_ends_after, self.trial_ends_before)
            and _within(subscription.grace_ends_at, self.grace_ends_after, self.grace_ends_before)
        )


def _within(value: Optional[datetime], after: Optional[datetime], before: Optional[datetime]) -> bool:
    if after is None and before is None:
        return True
    if value is None:
        return False
    if after is not None and value < ensure_aware(after):
        return False
    if before is not None and value > ensure_aware(before):
        return False
    return True


__all__ = ["SubscriptionQuery"]
