"""Lifecycle signals emitted by the subscription and usage services."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field

from ..catalog.models import Feature, Plan
from ..subscriptions.models import SubscriberRef, Subscription


class LedgerEvent(BaseModel):
    """Base record: when it happened and the subscription as it was at that moment."""

    name: ClassVar[str] = "ledger.event"

    subscription: Subscription
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @classmethod
    def capture(cls, subscription: Subscription, occurred_at: datetime, **fields) -> "LedgerEvent":
        """Build the event around a deep copy so later mutations do not leak into it."""

        return cls(subscription=subscription.model_copy(deep=True), occurred_at=occurred_at, **fields)

    @property
    def subscriber(self) -> SubscriberRef:
        return self.subscription.subscriber


class SubscriptionCreated(LedgerEvent):
    name: ClassVar[str] = "subscription.created"


class SubscriptionStarted(LedgerEvent):
    name: ClassVar[str] = "subscription.started"


class SubscriptionScheduled(LedgerEvent):
    name: ClassVar[str] = "subscription.scheduled"


class SubscriptionTrialStarted(LedgerEvent):
    name: ClassVar[str] = "subscription.trial_started"


class SubscriptionRenewed(LedgerEvent):
    name: ClassVar[str] = "subscription.renewed"


class SubscriptionCancelled(LedgerEvent):
    name: ClassVar[str] = "subscription.cancelled"

    immediately: bool = False


class SubscriptionReactivated(LedgerEvent):
    name: ClassVar[str] = "subscription.reactivated"


class SubscriptionPlanChanged(LedgerEvent):
    name: ClassVar[str] = "subscription.plan_changed"

    old_plan: Plan
    new_plan: Plan


class FeatureUsed(LedgerEvent):
    name: ClassVar[str] = "feature.used"

    feature: Feature
    units: Decimal


__all__ = [
    "FeatureUsed",
    "LedgerEvent",
    "SubscriptionCancelled",
    "SubscriptionCreated",
    "SubscriptionPlanChanged",
    "SubscriptionReactivated",
    "SubscriptionRenewed",
    "SubscriptionScheduled",
    "SubscriptionStarted",
    "SubscriptionTrialStarted",
]
