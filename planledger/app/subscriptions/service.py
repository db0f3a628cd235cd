"""Subscription lifecycle: creation, start, renewal, cancellation and plan changes."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence, Union
from uuid import uuid4

from ..catalog.models import Plan
from ..catalog.service import CatalogRepository
from ..events import (
    EventSink,
    LedgerEvent,
    NullEventSink,
    SubscriptionCancelled,
    SubscriptionCreated,
    SubscriptionPlanChanged,
    SubscriptionReactivated,
    SubscriptionRenewed,
    SubscriptionScheduled,
    SubscriptionStarted,
    SubscriptionTrialStarted,
)
from ..periods import (
    Clock,
    IntervalType,
    InvalidPeriodError,
    compute_period,
    current_time,
    parse_datetime,
    parse_optional_datetime,
)
from .models import SubscriberRef, Subscription
from .query import SubscriptionQuery

logger = logging.getLogger(__name__)

DateInput = Union[datetime, str]


class SubscriptionRepository(Protocol):
    """Persistence operations required by the subscription service."""

    def save_subscription(self, subscription: Subscription) -> Subscription:
        """Insert when ``id`` is unset, update otherwise."""

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        ...

    def get_subscription_by_slug(self, subscriber: SubscriberRef, slug: str) -> Optional[Subscription]:
        ...

    def list_subscriptions(self, query: SubscriptionQuery) -> Sequence[Subscription]:
        ...

    def apply_plan_change(self, subscription: Subscription, new_plan: Plan, *, sync: bool) -> Subscription:
        """Persist new dates and plan together with the usage ledger sync in one transaction.

        With ``sync`` the ledger entries of features granted by ``new_plan`` get
        the subscription's ``ends_at`` and every other entry is deleted; without
        it every entry of the subscription is deleted.
        """

    def apply_renewal(self, subscription: Subscription) -> Subscription:
        """Persist the renewed dates and restart the ledger entries of non-resetting features in one transaction.

        Those entries get ``used = 0`` and the subscription's new ``ends_at``;
        entries of features with their own reset interval are left alone.
        """


def _adopt(target: Subscription, source: Subscription) -> None:
    for name in Subscription.model_fields:
        setattr(target, name, getattr(source, name))


@dataclass
class SubscriptionService:
    """Coordinates subscription state changes and the events they emit."""

    repository: SubscriptionRepository
    catalog: CatalogRepository
    events: EventSink = field(default_factory=NullEventSink)
    clock: Optional[Clock] = None

    def _now(self) -> datetime:
        return current_time(self.clock)

    def _emit(self, event: LedgerEvent) -> None:
        self.events.dispatch(event)

    def _plan_for(self, subscription: Subscription) -> Plan:
        plan = self.catalog.get_plan(subscription.plan_id)
        if plan is None:
            raise LookupError(f"Plan {subscription.plan_id} not found for subscription {subscription.slug}")
        return plan

    def _persist(self, subscription: Subscription, updated: Subscription, action: str) -> bool:
        """Save ``updated`` and copy the stored record onto ``subscription``; it is left as is on failure."""

        try:
            stored = self.repository.save_subscription(updated)
        except Exception:
            logger.exception("Failed to %s subscription %s", action, subscription.slug)
            return False
        _adopt(subscription, stored)
        return True

    def _starts_by_today(self, subscription: Subscription, now: datetime) -> bool:
        if subscription.starts_at is None:
            return False
        return subscription.local_date(subscription.starts_at) <= subscription.local_date(now)

    # Creation

    def new_subscription(
        self,
        subscriber: SubscriberRef,
        plan: Plan,
        name: str,
        starts_at: Optional[DateInput] = None,
        ends_at: Optional[DateInput] = None,
        skip_trial: bool = False,
        skip_grace: bool = False,
        *,
        slug: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> Subscription:
        """Build an unsaved subscription to ``plan`` with dates derived from the plan terms."""

        if plan.id is None:
            raise ValueError("Plan must be persisted before subscribing to it")

        start = parse_optional_datetime(starts_at)
        end = parse_optional_datetime(ends_at)
        if start is not None and end is not None and start > end:
            raise InvalidPeriodError(start, end)

        now = self._now()
        start = start or now
        end = end or plan.calculate_next_recurrence_end(start)

        trial_ends_at = None
        if plan.has_trial_period() and not skip_trial:
            trial_ends_at = plan.calculate_trial_period_end(start)

        grace_ends_at = None
        if plan.has_grace_period() and not skip_grace:
            grace_ends_at = plan.calculate_grace_period_end(end)

        return Subscription(
            slug=slug or f"sub_{uuid4().hex}",
            name=name,
            plan_id=plan.id,
            subscriber=subscriber,
            starts_at=start,
            ends_at=end,
            trial_ends_at=trial_ends_at,
            grace_ends_at=grace_ends_at,
            timezone=timezone,
            created_at=now,
            updated_at=now,
        )

    def subscribe_to(
        self,
        subscriber: SubscriberRef,
        plan: Plan,
        name: str,
        starts_at: Optional[DateInput] = None,
        ends_at: Optional[DateInput] = None,
        skip_trial: bool = False,
        skip_grace: bool = False,
        *,
        slug: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> Optional[Subscription]:
        """Create and persist a subscription; ``None`` when it could not be stored."""

        subscription = self.new_subscription(
            subscriber,
            plan,
            name,
            starts_at,
            ends_at,
            skip_trial,
            skip_grace,
            slug=slug,
            timezone=timezone,
        )
        try:
            stored = self.repository.save_subscription(subscription)
        except Exception:
            logger.exception("Failed to persist subscription %s for %s", subscription.slug, subscriber)
            return None

        now = self._now()
        logger.info("Subscribed %s to plan %s as %s", subscriber, plan.slug, stored.slug)
        self._emit(SubscriptionCreated.capture(stored, now))
        if self._starts_by_today(stored, now):
            self._emit(SubscriptionStarted.capture(stored, now))
            if stored.on_trial(now):
                self._emit(SubscriptionTrialStarted.capture(stored, now))
        return stored

    # Lifecycle

    def set_new_period(
        self,
        subscription: Subscription,
        interval_type: Optional[Union[IntervalType, str]] = None,
        count: Optional[int] = None,
        anchor: Optional[DateInput] = None,
    ) -> Subscription:
        """Recompute ``starts_at``/``ends_at`` in memory; the caller persists.

        The interval defaults to the bound plan's recurrence and the anchor to now.
        """

        if not interval_type or not count:
            recurrence = self._plan_for(subscription).recurrence
            interval_type = interval_type or recurrence.interval_type
            count = count or recurrence.count
        period = compute_period(interval_type, count, anchor, clock=self._now)
        return subscription.apply_period(period)

    def start(
        self,
        subscription: Subscription,
        start_date: Optional[DateInput] = None,
        end_date: Optional[DateInput] = None,
    ) -> bool:
        now = self._now()
        start = parse_datetime(start_date) if start_date else now
        end = parse_optional_datetime(end_date)
        updated = subscription.model_copy(deep=True)
        if end is None or start > end:
            self.set_new_period(updated, anchor=start)
        else:
            updated.starts_at = start
            updated.ends_at = end

        if not self._persist(subscription, updated, "start"):
            return False

        start_day = subscription.local_date(start)
        today = subscription.local_date(now)
        if start_day == today:
            self._emit(SubscriptionStarted.capture(subscription, now))
        elif start_day > today:
            self._emit(SubscriptionScheduled.capture(subscription, now))
        return True

    def renew(self, subscription: Subscription, end_date: Optional[DateInput] = None) -> bool:
        """Open a new billing window for an ended subscription.

        Still running subscriptions are left untouched. An overdue subscription
        restarts from now; one that ended but is still within its grace period
        continues from its previous end so no time is lost or gained. Ledger
        entries of features without their own reset cadence start over with
        the new window.
        """

        now = self._now()
        if not subscription.is_ended(now):
            logger.info("Refusing to renew subscription %s: it has not ended", subscription.slug)
            return False

        plan = self._plan_for(subscription)
        if end_date is not None:
            starts_at = subscription.starts_at
            ends_at = parse_datetime(end_date)
        else:
            anchor = now if subscription.is_overdue(now) else subscription.ends_at
            starts_at = anchor
            ends_at = plan.calculate_next_recurrence_end(anchor)
        if starts_at is not None and starts_at > ends_at:
            raise InvalidPeriodError(starts_at, ends_at)

        updated = subscription.model_copy(deep=True)
        updated.starts_at = starts_at
        updated.ends_at = ends_at
        if updated.grace_ends_at is not None and plan.has_grace_period():
            updated.grace_ends_at = plan.calculate_grace_period_end(ends_at)
        updated.cancels_at = None

        try:
            stored = self.repository.apply_renewal(updated)
        except Exception:
            logger.exception("Failed to renew subscription %s", subscription.slug)
            return False
        _adopt(subscription, stored)
        logger.info("Renewed subscription %s until %s", subscription.slug, subscription.ends_at.isoformat())
        self._emit(SubscriptionRenewed.capture(subscription, now))
        return True

    def cancel(
        self,
        subscription: Subscription,
        cancel_date: Optional[DateInput] = None,
        immediately: bool = False,
    ) -> bool:
        now = self._now()
        cancels_at = parse_datetime(cancel_date) if cancel_date else now

        updated = subscription.model_copy(deep=True)
        updated.cancels_at = cancels_at
        if immediately:
            # a scheduled subscription cancelled before it starts collapses to an empty window
            if updated.starts_at is not None and updated.starts_at > cancels_at:
                updated.starts_at = cancels_at
            updated.ends_at = cancels_at

        if not self._persist(subscription, updated, "cancel"):
            return False
        self._emit(SubscriptionCancelled.capture(subscription, now, immediately=immediately))
        return True

    def cancel_immediately(self, subscription: Subscription, cancel_date: Optional[DateInput] = None) -> bool:
        return self.cancel(subscription, cancel_date, immediately=True)

    def reactivate(self, subscription: Subscription) -> bool:
        """Withdraw a cancellation while the subscription is still running or on grace."""

        now = self._now()
        if not subscription.is_cancelled() or subscription.is_overdue(now):
            return False
        updated = subscription.model_copy(deep=True)
        updated.cancels_at = None
        if not self._persist(subscription, updated, "reactivate"):
            return False
        self._emit(SubscriptionReactivated.capture(subscription, now))
        return True

    def change_plan(self, subscription: Subscription, new_plan: Plan, sync: bool = True) -> bool:
        """Move the subscription to ``new_plan``.

        A plan with a different recurrence starts a fresh billing window at
        now; no proration is applied. Dates, ledger sync and the plan switch
        are stored atomically and only copied onto ``subscription`` once the
        repository has committed them.
        """

        if new_plan.id is None:
            raise ValueError("Plan must be persisted before switching to it")

        now = self._now()
        old_plan = self._plan_for(subscription)
        updated = subscription.model_copy(deep=True)
        if not old_plan.has_same_recurrence(new_plan):
            updated.apply_period(compute_period(new_plan.recurrence.interval_type, new_plan.recurrence.count, now))
        updated.plan_id = new_plan.id
        updated.plan_changed_at = now

        try:
            stored = self.repository.apply_plan_change(updated, new_plan, sync=sync)
        except Exception:
            logger.exception(
                "Failed to change plan of subscription %s from %s to %s",
                subscription.slug,
                old_plan.slug,
                new_plan.slug,
            )
            return False

        _adopt(subscription, stored)
        logger.info(
            "Subscription %s changed plan %s -> %s sync=%s",
            subscription.slug,
            old_plan.slug,
            new_plan.slug,
            sync,
        )
        self._emit(SubscriptionPlanChanged.capture(subscription, now, old_plan=old_plan, new_plan=new_plan))
        return True

    # Subscriber queries

    def get_subscription_by_slug(self, subscriber: SubscriberRef, slug: str) -> Optional[Subscription]:
        return self.repository.get_subscription_by_slug(subscriber, slug)

    def subscriptions_for(self, subscriber: SubscriberRef) -> Sequence[Subscription]:
        return self.repository.list_subscriptions(SubscriptionQuery(subscriber=subscriber).at(self._now()))

    def latest_subscription(self, subscriber: SubscriberRef) -> Optional[Subscription]:
        """Most recently started subscription of the subscriber."""

        subscriptions = self.subscriptions_for(subscriber)
        started = [item for item in subscriptions if item.starts_at is not None]
        if not started:
            return None
        return max(started, key=lambda item: item.starts_at)

    def active_subscriptions(self, subscriber: SubscriberRef) -> List[Subscription]:
        now = self._now()
        return [item for item in self.subscriptions_for(subscriber) if item.is_active(now)]

    def inactive_subscriptions(self, subscriber: SubscriberRef) -> List[Subscription]:
        now = self._now()
        return [item for item in self.subscriptions_for(subscriber) if item.is_inactive(now)]

    def plans_for_active_subscriptions(self, subscriber: SubscriberRef) -> Sequence[Plan]:
        return self._plans_of(self.active_subscriptions(subscriber))

    def plans_for_inactive_subscriptions(self, subscriber: SubscriberRef) -> Sequence[Plan]:
        return self._plans_of(self.inactive_subscriptions(subscriber))

    def has_subscription_to(self, subscriber: SubscriberRef, plan: Plan) -> bool:
        return any(item.plan_id == plan.id for item in self.subscriptions_for(subscriber))

    def has_active_subscription_to(self, subscriber: SubscriberRef, plan: Plan) -> bool:
        return any(item.plan_id == plan.id for item in self.active_subscriptions(subscriber))

    def _plans_of(self, subscriptions: Sequence[Subscription]) -> Sequence[Plan]:
        plan_ids = sorted({item.plan_id for item in subscriptions})
        return self.catalog.get_plans(plan_ids)

    # Scheduler queries

    def overdue_subscriptions(self, before: Optional[DateInput] = None) -> List[Subscription]:
        """Subscriptions past both their end and grace dates at ``before`` (default now)."""

        moment = parse_datetime(before) if before else self._now()
        candidates = self.repository.list_subscriptions(SubscriptionQuery(ends_before=moment, now=moment))
        return [item for item in candidates if item.is_overdue(moment)]

    def subscriptions_ending_within(self, days: int = 3) -> Sequence[Subscription]:
        now = self._now()
        return self.repository.list_subscriptions(
            SubscriptionQuery(ends_after=now, ends_before=now + timedelta(days=days), now=now)
        )

    def trials_ending_within(self, days: int = 3) -> Sequence[Subscription]:
        now = self._now()
        return self.repository.list_subscriptions(
            SubscriptionQuery(trial_ends_after=now, trial_ends_before=now + timedelta(days=days), now=now)
        )

    def grace_periods_ending_within(self, days: int = 3) -> Sequence[Subscription]:
        now = self._now()
        return self.repository.list_subscriptions(
            SubscriptionQuery(grace_ends_after=now, grace_ends_before=now + timedelta(days=days), now=now)
        )

    def not_active_subscriptions(self) -> Sequence[Subscription]:
        """Subscriptions that have ended, have not started yet, or carry a cancellation."""

        now = self._now()
        return self.repository.list_subscriptions(SubscriptionQuery(only_not_active=True, now=now))


__all__ = ["SubscriptionRepository", "SubscriptionService"]
