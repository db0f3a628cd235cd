from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from planledger.app.catalog import CatalogService, Feature, Plan, PlanFeature
from planledger.app.catalog.service import CatalogRepository
from planledger.app.events import LedgerEvent
from planledger.app.periods import Interval, IntervalType
from planledger.app.subscriptions import SubscriberRef, Subscription, SubscriptionQuery
from planledger.app.subscriptions.service import SubscriptionRepository, SubscriptionService
from planledger.app.usage import FeatureUsage, UsageConflictError, UsageService
from planledger.app.usage.service import UsageRepository

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingEventSink:
    def __init__(self) -> None:
        self.events: List[LedgerEvent] = []

    def dispatch(self, event: LedgerEvent) -> None:
        self.events.append(event)

    @property
    def names(self) -> List[str]:
        return [event.name for event in self.events]

    def clear(self) -> None:
        self.events.clear()


class InMemoryLedger(CatalogRepository, SubscriptionRepository, UsageRepository):
    """Single store backing the catalog, subscription and usage repositories."""

    def __init__(self, clock: FixedClock) -> None:
        self.clock = clock
        self.features: Dict[int, Feature] = {}
        self.plans: Dict[int, Plan] = {}
        self.grants: Dict[Tuple[int, int], Optional[int]] = {}
        self.subscriptions: Dict[int, Subscription] = {}
        self.usage: Dict[int, FeatureUsage] = {}
        self.fail_saves = False
        self.fail_plan_changes = False
        self._next_id = 0

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    # catalog

    def save_feature(self, feature: Feature) -> Feature:
        existing = next((item for item in self.features.values() if item.slug == feature.slug), None)
        stored = feature.model_copy(
            update={"id": existing.id if existing else self._id(), "deleted_at": None, "updated_at": self.clock()}
        )
        self.features[stored.id] = stored
        return stored

    def get_feature(self, feature_id: int) -> Optional[Feature]:
        return self.features.get(feature_id)

    def get_feature_by_slug(self, slug: str) -> Optional[Feature]:
        return next(
            (item for item in self.features.values() if item.slug == slug and item.deleted_at is None),
            None,
        )

    def list_features(self, *, active: Optional[bool] = None) -> Sequence[Feature]:
        return [
            item
            for item in self.features.values()
            if item.deleted_at is None and (active is None or item.active == active)
        ]

    def set_feature_active(self, feature_id: int, active: bool) -> Optional[Feature]:
        feature = self.features.get(feature_id)
        if feature is None or feature.deleted_at is not None:
            return None
        updated = feature.model_copy(update={"active": active})
        self.features[feature_id] = updated
        return updated

    def soft_delete_feature(self, feature_id: int, deleted_at: datetime) -> bool:
        feature = self.features.get(feature_id)
        if feature is None or feature.deleted_at is not None:
            return False
        self.features[feature_id] = feature.model_copy(update={"deleted_at": deleted_at})
        return True

    def save_plan(self, plan: Plan) -> Plan:
        existing = next((item for item in self.plans.values() if item.slug == plan.slug), None)
        stored = plan.model_copy(
            update={"id": existing.id if existing else self._id(), "features": (), "deleted_at": None}
        )
        self.plans[stored.id] = stored
        return self._hydrate(stored)

    def _hydrate(self, plan: Plan) -> Plan:
        grants = tuple(
            PlanFeature(feature=self.features[feature_id], units=units)
            for (feature_id, plan_id), units in self.grants.items()
            if plan_id == plan.id and self.features[feature_id].deleted_at is None
        )
        return plan.model_copy(update={"features": grants})

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        plan = self.plans.get(plan_id)
        return self._hydrate(plan) if plan else None

    def get_plan_by_slug(self, slug: str) -> Optional[Plan]:
        plan = next((item for item in self.plans.values() if item.slug == slug and item.deleted_at is None), None)
        return self._hydrate(plan) if plan else None

    def get_plans(self, plan_ids: Sequence[int]) -> Sequence[Plan]:
        return [self._hydrate(self.plans[plan_id]) for plan_id in sorted(plan_ids) if plan_id in self.plans]

    def list_plans(self, *, active: Optional[bool] = None) -> Sequence[Plan]:
        return [
            self._hydrate(item)
            for item in self.plans.values()
            if item.deleted_at is None and (active is None or item.active == active)
        ]

    def list_plans_granting(self, feature_id: int) -> Sequence[Plan]:
        plan_ids = {plan_id for (granted, plan_id) in self.grants if granted == feature_id}
        return [
            self._hydrate(item)
            for item in self.plans.values()
            if item.id in plan_ids and item.deleted_at is None
        ]

    def set_plan_active(self, plan_id: int, active: bool) -> Optional[Plan]:
        plan = self.plans.get(plan_id)
        if plan is None or plan.deleted_at is not None:
            return None
        self.plans[plan_id] = plan.model_copy(update={"active": active})
        return self._hydrate(self.plans[plan_id])

    def soft_delete_plan(self, plan_id: int, deleted_at: datetime) -> bool:
        plan = self.plans.get(plan_id)
        if plan is None or plan.deleted_at is not None:
            return False
        self.plans[plan_id] = plan.model_copy(update={"deleted_at": deleted_at})
        return True

    def attach_feature(self, plan_id: int, feature_id: int, units: Optional[int]) -> Plan:
        self.grants[(feature_id, plan_id)] = units
        return self._hydrate(self.plans[plan_id])

    # subscriptions

    def save_subscription(self, subscription: Subscription) -> Subscription:
        if self.fail_saves:
            raise RuntimeError("database unavailable")
        stored = subscription.model_copy(deep=True)
        if stored.id is None:
            stored.id = self._id()
        stored.updated_at = self.clock()
        self.subscriptions[stored.id] = stored
        return stored.model_copy(deep=True)

    def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        stored = self.subscriptions.get(subscription_id)
        return stored.model_copy(deep=True) if stored else None

    def get_subscription_by_slug(self, subscriber: SubscriberRef, slug: str) -> Optional[Subscription]:
        for stored in self.subscriptions.values():
            if stored.subscriber == subscriber and stored.slug == slug:
                return stored.model_copy(deep=True)
        return None

    def list_subscriptions(self, query: SubscriptionQuery) -> Sequence[Subscription]:
        matching = [
            stored.model_copy(deep=True)
            for stored in self.subscriptions.values()
            if query.matches(stored, self.clock())
        ]
        matching.sort(key=lambda item: (item.starts_at or NOW, item.id), reverse=query.newest_first)
        return matching[: query.limit] if query.limit is not None else matching

    def apply_plan_change(self, subscription: Subscription, new_plan: Plan, *, sync: bool) -> Subscription:
        if self.fail_plan_changes:
            raise RuntimeError("deadlock detected")
        granted = set(self.get_plan(new_plan.id).feature_ids())
        usage = dict(self.usage)
        for usage_id, entry in self.usage.items():
            if entry.subscription_id != subscription.id:
                continue
            if sync and entry.feature_id in granted:
                usage[usage_id] = entry.model_copy(update={"ends_at": subscription.ends_at, "version": entry.version + 1})
            else:
                del usage[usage_id]
        stored = subscription.model_copy(deep=True)
        stored.plan_id = new_plan.id
        stored.updated_at = self.clock()
        self.usage = usage
        self.subscriptions[stored.id] = stored
        return stored.model_copy(deep=True)

    def apply_renewal(self, subscription: Subscription) -> Subscription:
        stored = self.save_subscription(subscription)
        for usage_id, entry in list(self.usage.items()):
            if entry.subscription_id != stored.id or self.features[entry.feature_id].is_recurring():
                continue
            self.usage[usage_id] = entry.model_copy(
                update={"used": Decimal("0"), "ends_at": stored.ends_at, "version": entry.version + 1}
            )
        return stored

    # usage

    def get_usage(self, subscription_id: int, feature_id: int) -> Optional[FeatureUsage]:
        return next(
            (
                entry
                for entry in self.usage.values()
                if entry.subscription_id == subscription_id and entry.feature_id == feature_id
            ),
            None,
        )

    def first_or_create_usage(self, usage: FeatureUsage) -> Tuple[FeatureUsage, bool]:
        existing = self.get_usage(usage.subscription_id, usage.feature_id)
        if existing is not None:
            return existing, False
        stored = usage.model_copy(update={"id": self._id()})
        self.usage[stored.id] = stored
        return stored, True

    def save_usage(self, usage: FeatureUsage) -> FeatureUsage:
        current = self.usage.get(usage.id)
        if current is None or current.version != usage.version:
            raise UsageConflictError(usage.subscription_id, usage.feature_id, usage.version)
        stored = usage.model_copy(update={"version": usage.version + 1, "updated_at": self.clock()})
        self.usage[stored.id] = stored
        return stored

    def list_usage(self, subscription_id: int) -> Sequence[FeatureUsage]:
        return [entry for entry in self.usage.values() if entry.subscription_id == subscription_id]


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def ledger(clock: FixedClock) -> InMemoryLedger:
    return InMemoryLedger(clock)


@pytest.fixture
def sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def catalog_service(ledger: InMemoryLedger, clock: FixedClock) -> CatalogService:
    return CatalogService(repository=ledger, clock=clock)


@pytest.fixture
def subscription_service(ledger: InMemoryLedger, sink: RecordingEventSink, clock: FixedClock) -> SubscriptionService:
    return SubscriptionService(repository=ledger, catalog=ledger, events=sink, clock=clock)


@pytest.fixture
def usage_service(ledger: InMemoryLedger, sink: RecordingEventSink, clock: FixedClock) -> UsageService:
    return UsageService(repository=ledger, catalog=ledger, events=sink, clock=clock)


@pytest.fixture
def subscriber() -> SubscriberRef:
    return SubscriberRef(kind="user", id=42)


@pytest.fixture
def catalog(catalog_service: CatalogService) -> Dict[str, object]:
    """A small catalog: monthly, weekly and trial plans sharing a few features."""

    api_calls = catalog_service.create_feature(Feature(slug="api-calls", name="API calls", consumable=True))
    seats = catalog_service.create_feature(Feature(slug="seats", name="Seats", consumable=True))
    exports = catalog_service.create_feature(Feature(slug="exports", name="Exports"))
    reports = catalog_service.create_feature(
        Feature(
            slug="reports",
            name="Reports",
            consumable=True,
            reset_interval=Interval(IntervalType.WEEK, 1),
        )
    )

    monthly = catalog_service.create_plan(Plan(slug="pro-monthly", name="Pro monthly", price=1500))
    other_monthly = catalog_service.create_plan(Plan(slug="team-monthly", name="Team monthly", price=4500))
    weekly = catalog_service.create_plan(
        Plan(slug="pro-weekly", name="Pro weekly", price=500, recurrence=Interval(IntervalType.WEEK, 1))
    )
    trial = catalog_service.create_plan(
        Plan(
            slug="trial-monthly",
            name="Trial monthly",
            price=1000,
            trial_period=Interval(IntervalType.DAY, 14),
            grace_period=Interval(IntervalType.DAY, 3),
        )
    )

    catalog_service.attach_feature(monthly, api_calls, 10)
    catalog_service.attach_feature(monthly, exports)
    catalog_service.attach_feature(monthly, reports, 5)
    catalog_service.attach_feature(monthly, seats)
    catalog_service.attach_feature(other_monthly, api_calls, 100)
    catalog_service.attach_feature(weekly, exports)
    catalog_service.attach_feature(trial, api_calls, 3)

    return {
        "api_calls": api_calls,
        "seats": seats,
        "exports": exports,
        "reports": reports,
        "monthly": catalog_service.find_plan_by_slug("pro-monthly"),
        "other_monthly": catalog_service.find_plan_by_slug("team-monthly"),
        "weekly": catalog_service.find_plan_by_slug("pro-weekly"),
        "trial": catalog_service.find_plan_by_slug("trial-monthly"),
    }
