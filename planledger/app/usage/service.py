"""Entitlement checks and the per-subscription feature usage ledger."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol, Sequence, Tuple

from ..catalog.models import Feature, FeatureRef, Plan, PlanFeature, feature_slug
from ..catalog.service import CatalogRepository
from ..events import EventSink, FeatureUsed, NullEventSink
from ..periods import Clock, current_time
from ..subscriptions.models import Subscription
from .exceptions import CannotUseFeatureError, CannotUseReason, FeatureNotFoundError, Units
from .models import FeatureUsage

logger = logging.getLogger(__name__)


class UsageRepository(Protocol):
    """Persistence operations required by the usage service."""

    def get_usage(self, subscription_id: int, feature_id: int) -> Optional[FeatureUsage]:
        ...

    def first_or_create_usage(self, usage: FeatureUsage) -> Tuple[FeatureUsage, bool]:
        """Return the live row for the pair, inserting ``usage`` if none exists, and whether it was created."""

    def save_usage(self, usage: FeatureUsage) -> FeatureUsage:
        """Write ``usage`` if its ``version`` still matches, raising ``UsageConflictError`` otherwise."""

    def list_usage(self, subscription_id: int) -> Sequence[FeatureUsage]:
        ...


def _as_units(value: Units) -> Decimal:
    units = value if isinstance(value, Decimal) else Decimal(str(value))
    if units < 0:
        raise ValueError("units must be >= 0")
    return units


@dataclass
class UsageService:
    """Grants, validates and records feature usage for subscriptions."""

    repository: UsageRepository
    catalog: CatalogRepository
    events: EventSink = field(default_factory=NullEventSink)
    clock: Optional[Clock] = None

    def _now(self) -> datetime:
        return current_time(self.clock)

    def _require_id(self, subscription: Subscription) -> int:
        if subscription.id is None:
            raise ValueError("Subscription must be persisted before tracking usage")
        return subscription.id

    def plan_for(self, subscription: Subscription) -> Optional[Plan]:
        return self.catalog.get_plan(subscription.plan_id)

    def features_for(self, subscription: Subscription) -> Tuple[PlanFeature, ...]:
        """Features granted by the subscription's plan, loaded fresh on every call."""

        plan = self.plan_for(subscription)
        return plan.features if plan else ()

    def _grant(self, subscription: Subscription, feature: FeatureRef) -> Optional[PlanFeature]:
        slug = feature_slug(feature)
        for grant in self.features_for(subscription):
            if grant.feature.slug == slug:
                return grant
        return None

    def has_feature(self, subscription: Subscription, feature: FeatureRef) -> bool:
        return self._grant(subscription, feature) is not None

    def missing_feature(self, subscription: Subscription, feature: FeatureRef) -> bool:
        return not self.has_feature(subscription, feature)

    def first_or_create_usage(
        self,
        subscription: Subscription,
        feature: FeatureRef,
        initial_used: Units = 0,
    ) -> Optional[FeatureUsage]:
        """Ledger entry for the pair, created on demand; ``None`` when the feature is not usable."""

        grant = self._grant(subscription, feature)
        if grant is None or grant.feature.is_inactive():
            return None
        return self._first_or_create(subscription, grant.feature, initial_used)[0]

    def _first_or_create(
        self,
        subscription: Subscription,
        feature: Feature,
        initial_used: Units = 0,
    ) -> Tuple[FeatureUsage, bool]:
        ends_at = subscription.ends_at
        if feature.is_recurring():
            # reset windows are aligned to when the subscription was created
            first_reset = feature.calculate_next_reset_end(subscription.created_at)
            ends_at = self._roll_forward(feature, first_reset, self._now())
        draft = FeatureUsage(
            subscription_id=self._require_id(subscription),
            feature_id=feature.id,
            used=_as_units(initial_used),
            ends_at=ends_at,
            active=True,
        )
        usage, created = self.repository.first_or_create_usage(draft)
        if created:
            logger.debug("Created usage entry subscription=%s feature=%s", subscription.id, feature.slug)
        return usage, created

    def _existing_usage(self, subscription: Subscription, feature: Feature) -> Optional[FeatureUsage]:
        return self.repository.get_usage(self._require_id(subscription), feature.id)

    def validate_feature(
        self,
        subscription: Subscription,
        feature: FeatureRef,
        units: Units,
        *,
        increment: bool = True,
    ) -> PlanFeature:
        """Raise unless ``units`` of ``feature`` may be used now.

        When ``increment`` is false the units replace the current usage and are
        checked against the plan cap instead of the remaining balance.
        """

        requested = _as_units(units)
        grant = self._grant(subscription, feature)
        if grant is None:
            raise FeatureNotFoundError(feature)
        if grant.feature.is_inactive():
            raise CannotUseFeatureError(CannotUseReason.INACTIVE_FEATURE, grant.feature, units)

        usage = self._existing_usage(subscription, grant.feature)
        if usage is not None and usage.is_inactive():
            raise CannotUseFeatureError(CannotUseReason.DEACTIVATED_USAGE, grant.feature, units)

        if grant.feature.consumable and self._window_closed(subscription, grant.feature):
            raise CannotUseFeatureError(CannotUseReason.ENDED_USAGE, grant.feature, units)
        if grant.feature.consumable and grant.units is not None:
            available = self._remaining(subscription, grant, usage) if increment else Decimal(grant.units)
            if requested > available:
                raise CannotUseFeatureError(CannotUseReason.INSUFFICIENT_BALANCE, grant.feature, units)
        return grant

    def use_feature(
        self,
        subscription: Subscription,
        feature: FeatureRef,
        units: Units,
        increment: bool = True,
    ) -> FeatureUsage:
        """Consume ``units`` of ``feature``, or overwrite the usage when ``increment`` is false."""

        grant = self.validate_feature(subscription, feature, units, increment=increment)
        resolved = grant.feature
        amount = _as_units(units)
        now = self._now()
        usage, _created = self._first_or_create(subscription, resolved)

        update: dict = {}
        used = usage.used
        if usage.has_ended(now):
            if resolved.is_recurring():
                update["ends_at"] = self._roll_forward(resolved, usage.ends_at, now)
            else:
                # entry left over from an earlier billing period
                update["ends_at"] = subscription.ends_at
            used = Decimal("0")
        if resolved.consumable:
            used = used + amount if increment else amount
        update["used"] = used

        stored = self.repository.save_usage(usage.model_copy(update=update))
        self.events.dispatch(FeatureUsed.capture(subscription, now, feature=resolved, units=amount))
        return stored

    def _roll_forward(self, feature: Feature, ends_at: datetime, now: datetime) -> datetime:
        """Advance a reset deadline window by window until it lies after ``now``."""

        while ends_at <= now:
            ends_at = feature.calculate_next_reset_end(ends_at)
        return ends_at

    def set_used_units(self, subscription: Subscription, feature: FeatureRef, units: Units) -> FeatureUsage:
        return self.use_feature(subscription, feature, units, increment=False)

    def can_use_feature(self, subscription: Subscription, feature: FeatureRef, units: Optional[Units] = None) -> bool:
        grant = self._grant(subscription, feature)
        if grant is None or grant.feature.is_inactive():
            return False
        usage = self.first_or_create_usage(subscription, grant.feature)
        if usage is None or usage.is_inactive():
            return False
        if not grant.feature.consumable:
            return True
        if self._window_closed(subscription, grant.feature):
            return False
        remaining = self._remaining(subscription, grant, usage)
        if remaining is None:
            return True
        return remaining >= _as_units(units or 0)

    def cannot_use_feature(self, subscription: Subscription, feature: FeatureRef, units: Optional[Units] = None) -> bool:
        return not self.can_use_feature(subscription, feature, units)

    def get_max_units(self, subscription: Subscription, feature: FeatureRef) -> Optional[int]:
        """Plan cap for the feature: ``None`` when unlimited, 0 when not granted."""

        grant = self._grant(subscription, feature)
        if grant is None:
            return 0
        return grant.units

    def get_used_units(self, subscription: Subscription, feature: FeatureRef) -> Decimal:
        grant = self._grant(subscription, feature)
        if grant is None:
            return Decimal("0")
        return self._used(subscription, grant.feature, self._existing_usage(subscription, grant.feature))

    def get_remaining_units(self, subscription: Subscription, feature: FeatureRef) -> Optional[Decimal]:
        grant = self._grant(subscription, feature)
        if grant is None:
            return Decimal("0")
        return self._remaining(subscription, grant, self._existing_usage(subscription, grant.feature))

    def _window_closed(self, subscription: Subscription, feature: Feature) -> bool:
        """True once the billing period a feature without its own reset cadence is metered against is over."""

        if feature.is_recurring() or subscription.ends_at is None:
            return False
        return subscription.ends_at <= self._now()

    def _used(self, subscription: Subscription, feature: Feature, usage: Optional[FeatureUsage]) -> Decimal:
        if usage is None:
            return Decimal("0")
        if self._window_closed(subscription, feature):
            return usage.used
        if usage.has_ended(self._now()):
            return Decimal("0")
        return usage.used

    def _remaining(
        self,
        subscription: Subscription,
        grant: PlanFeature,
        usage: Optional[FeatureUsage],
    ) -> Optional[Decimal]:
        if grant.feature.consumable and self._window_closed(subscription, grant.feature):
            return Decimal("0")
        if grant.units is None:
            return None
        return Decimal(grant.units) - self._used(subscription, grant.feature, usage)

    def activate_feature(self, subscription: Subscription, feature: FeatureRef) -> bool:
        return self._set_usage_active(subscription, feature, True)

    def deactivate_feature(self, subscription: Subscription, feature: FeatureRef) -> bool:
        return self._set_usage_active(subscription, feature, False)

    def _set_usage_active(self, subscription: Subscription, feature: FeatureRef, active: bool) -> bool:
        usage = self.first_or_create_usage(subscription, feature)
        if usage is None:
            return False
        if usage.active != active:
            self.repository.save_usage(usage.model_copy(update={"active": active}))
        logger.info(
            "Usage of %s for subscription %s active=%s",
            feature_slug(feature),
            subscription.slug,
            active,
        )
        return True

    def usage_for(self, subscription: Subscription) -> Sequence[FeatureUsage]:
        return self.repository.list_usage(self._require_id(subscription))


__all__ = ["UsageRepository", "UsageService"]
