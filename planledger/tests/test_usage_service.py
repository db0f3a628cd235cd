from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from planledger.app.usage import (
    CannotUseFeatureError,
    CannotUseReason,
    FeatureNotFoundError,
    UsageConflictError,
)


@pytest.fixture
def subscription(subscription_service, subscriber, catalog):
    return subscription_service.subscribe_to(subscriber, catalog["monthly"], "Main")


def test_quota_is_enforced_up_to_the_plan_cap(usage_service, subscription):
    assert usage_service.can_use_feature(subscription, "api-calls", 10)
    assert not usage_service.can_use_feature(subscription, "api-calls", 11)

    usage_service.use_feature(subscription, "api-calls", 10)

    assert usage_service.get_remaining_units(subscription, "api-calls") == Decimal("0")
    assert usage_service.cannot_use_feature(subscription, "api-calls", 1)
    with pytest.raises(CannotUseFeatureError) as excinfo:
        usage_service.use_feature(subscription, "api-calls", 1)
    assert excinfo.value.reason == CannotUseReason.INSUFFICIENT_BALANCE
    assert usage_service.get_used_units(subscription, "api-calls") == Decimal("10")


def test_fractional_units_are_tracked(usage_service, subscription):
    usage_service.use_feature(subscription, "api-calls", Decimal("2.5"))

    assert usage_service.get_used_units(subscription, "api-calls") == Decimal("2.5")
    assert usage_service.get_remaining_units(subscription, "api-calls") == Decimal("7.5")


def test_negative_units_are_rejected(usage_service, subscription):
    with pytest.raises(ValueError):
        usage_service.use_feature(subscription, "api-calls", -1)


def test_non_consumable_features_never_accumulate(usage_service, subscription):
    usage_service.use_feature(subscription, "exports", 5)
    entry = usage_service.use_feature(subscription, "exports", 5)

    assert entry.used == Decimal("0")
    assert usage_service.can_use_feature(subscription, "exports", 1_000)
    assert usage_service.get_max_units(subscription, "exports") is None
    assert usage_service.get_remaining_units(subscription, "exports") is None


def test_unlimited_consumable_grant(usage_service, subscription):
    usage_service.use_feature(subscription, "seats", 500)

    assert usage_service.can_use_feature(subscription, "seats", 1_000_000)
    assert usage_service.get_used_units(subscription, "seats") == Decimal("500")
    assert usage_service.get_remaining_units(subscription, "seats") is None
    assert usage_service.get_max_units(subscription, "seats") is None


def test_set_used_units_overwrites_and_checks_the_cap(usage_service, subscription):
    usage_service.use_feature(subscription, "api-calls", 4)

    usage_service.set_used_units(subscription, "api-calls", 7)
    assert usage_service.get_used_units(subscription, "api-calls") == Decimal("7")

    usage_service.set_used_units(subscription, "api-calls", 10)
    assert usage_service.get_used_units(subscription, "api-calls") == Decimal("10")

    with pytest.raises(CannotUseFeatureError) as excinfo:
        usage_service.set_used_units(subscription, "api-calls", 11)
    assert excinfo.value.reason == CannotUseReason.INSUFFICIENT_BALANCE


def test_feature_outside_the_plan(usage_service, subscription_service, subscriber, catalog):
    weekly = subscription_service.subscribe_to(subscriber, catalog["weekly"], "Weekly")

    with pytest.raises(FeatureNotFoundError) as excinfo:
        usage_service.use_feature(weekly, "api-calls", 1)

    error = excinfo.value
    assert isinstance(error, LookupError)
    assert error.status_code == 404
    assert error.payload == {
        "error": "feature_not_found",
        "message": "None of the plans grants access to this feature.",
        "feature": "api-calls",
    }
    assert usage_service.missing_feature(weekly, "api-calls")
    assert not usage_service.can_use_feature(weekly, "api-calls", 1)
    assert usage_service.get_max_units(weekly, "api-calls") == 0
    assert usage_service.get_remaining_units(weekly, "api-calls") == Decimal("0")
    assert usage_service.get_used_units(weekly, "api-calls") == Decimal("0")
    assert usage_service.first_or_create_usage(weekly, "api-calls") is None


def test_inactive_feature_cannot_be_used(usage_service, catalog_service, subscription):
    catalog_service.deactivate_feature("api-calls")

    with pytest.raises(CannotUseFeatureError) as excinfo:
        usage_service.use_feature(subscription, "api-calls", 1)

    assert excinfo.value.reason == CannotUseReason.INACTIVE_FEATURE
    assert str(excinfo.value) == "This feature is inactive for this plan: Only active feature can be used"
    assert excinfo.value.status_code == 403
    assert not usage_service.can_use_feature(subscription, "api-calls", 1)
    assert usage_service.first_or_create_usage(subscription, "api-calls") is None
    assert usage_service.has_feature(subscription, "api-calls")


def test_deactivation_is_idempotent(usage_service, subscription, ledger, catalog):
    assert usage_service.deactivate_feature(subscription, "api-calls")
    version = ledger.get_usage(subscription.id, catalog["api_calls"].id).version
    assert usage_service.deactivate_feature(subscription, "api-calls")

    for _ in range(2):
        with pytest.raises(CannotUseFeatureError) as excinfo:
            usage_service.use_feature(subscription, "api-calls", 1)
        assert excinfo.value.reason == CannotUseReason.DEACTIVATED_USAGE

    entries = usage_service.usage_for(subscription)
    assert len(entries) == 1
    assert entries[0].active is False
    assert entries[0].version == version
    assert not usage_service.can_use_feature(subscription, "api-calls", 1)

    assert usage_service.activate_feature(subscription, "api-calls")
    assert usage_service.can_use_feature(subscription, "api-calls", 1)


def test_toggling_an_ungranted_feature_reports_failure(usage_service, subscription):
    assert not usage_service.deactivate_feature(subscription, "unknown")
    assert not usage_service.activate_feature(subscription, "unknown")


def test_reset_interval_rolls_the_window_forward(usage_service, subscription, clock):
    first = usage_service.use_feature(subscription, "reports", 3)

    assert first.ends_at == datetime(2024, 3, 22, 12, 0, tzinfo=timezone.utc)
    assert usage_service.get_remaining_units(subscription, "reports") == Decimal("2")

    clock.advance(days=8)
    assert usage_service.get_used_units(subscription, "reports") == Decimal("0")
    assert usage_service.can_use_feature(subscription, "reports", 5)

    second = usage_service.use_feature(subscription, "reports", 4)

    assert second.used == Decimal("4")
    assert second.ends_at == datetime(2024, 3, 29, 12, 0, tzinfo=timezone.utc)


def test_first_use_long_after_creation_lands_in_the_current_window(usage_service, subscription, clock):
    clock.advance(days=20)

    entry = usage_service.use_feature(subscription, "reports", 1)

    assert entry.ends_at == datetime(2024, 4, 5, 12, 0, tzinfo=timezone.utc)
    assert entry.used == Decimal("1")


def test_feature_used_event_carries_units(usage_service, subscription, sink):
    sink.clear()

    usage_service.use_feature(subscription, "api-calls", 2)

    assert sink.names == ["feature.used"]
    event = sink.events[0]
    assert event.feature.slug == "api-calls"
    assert event.units == Decimal("2")
    assert event.subscriber == subscription.subscriber


def test_stale_entry_is_rejected(usage_service, subscription, ledger):
    stale = usage_service.first_or_create_usage(subscription, "api-calls")
    usage_service.use_feature(subscription, "api-calls", 1)

    with pytest.raises(UsageConflictError):
        ledger.save_usage(stale.model_copy(update={"used": Decimal("9")}))

    assert usage_service.get_used_units(subscription, "api-calls") == Decimal("1")


def test_usage_requires_a_persisted_subscription(usage_service, subscription_service, subscriber, catalog):
    draft = subscription_service.new_subscription(subscriber, catalog["monthly"], "Draft")

    with pytest.raises(ValueError):
        usage_service.use_feature(draft, "api-calls", 1)


def test_spent_quota_stays_spent_during_the_grace_period(usage_service, subscription_service, subscriber, catalog, clock):
    trial = subscription_service.subscribe_to(subscriber, catalog["trial"], "Trial")
    usage_service.use_feature(trial, "api-calls", 3)

    clock.advance(days=32)
    assert trial.is_on_grace_period(clock.now)

    assert not usage_service.can_use_feature(trial, "api-calls", 3)
    assert not usage_service.can_use_feature(trial, "api-calls", 1)
    assert usage_service.get_remaining_units(trial, "api-calls") == Decimal("0")
    assert usage_service.get_used_units(trial, "api-calls") == Decimal("3")
    with pytest.raises(CannotUseFeatureError) as excinfo:
        usage_service.use_feature(trial, "api-calls", 3)
    assert excinfo.value.reason == CannotUseReason.ENDED_USAGE
    assert excinfo.value.payload["reason"] == "ended_usage"
    assert usage_service.get_used_units(trial, "api-calls") == Decimal("3")

    assert subscription_service.renew(trial)

    assert usage_service.get_used_units(trial, "api-calls") == Decimal("0")
    assert usage_service.can_use_feature(trial, "api-calls", 3)
    entry = usage_service.use_feature(trial, "api-calls", 3)
    assert entry.used == Decimal("3")
    assert entry.ends_at == datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)
    assert usage_service.cannot_use_feature(trial, "api-calls", 1)


def test_renewal_restarts_the_quota(usage_service, subscription_service, subscription, clock, ledger, catalog):
    usage_service.use_feature(subscription, "api-calls", 10)
    usage_service.use_feature(subscription, "reports", 2)
    reports_end = ledger.get_usage(subscription.id, catalog["reports"].id).ends_at

    clock.advance(days=40)
    assert subscription.is_overdue(clock.now)
    assert not usage_service.can_use_feature(subscription, "api-calls", 1)

    assert subscription_service.renew(subscription)

    entry = ledger.get_usage(subscription.id, catalog["api_calls"].id)
    assert entry.used == Decimal("0")
    assert entry.ends_at == subscription.ends_at == datetime(2024, 5, 24, 12, 0, tzinfo=timezone.utc)
    assert ledger.get_usage(subscription.id, catalog["reports"].id).ends_at == reports_end

    usage_service.use_feature(subscription, "api-calls", 10)
    with pytest.raises(CannotUseFeatureError) as excinfo:
        usage_service.use_feature(subscription, "api-calls", 10)
    assert excinfo.value.reason == CannotUseReason.INSUFFICIENT_BALANCE
    assert usage_service.get_used_units(subscription, "api-calls") == Decimal("10")


def test_entry_from_an_earlier_period_starts_from_zero(usage_service, subscription_service, subscription, clock):
    usage_service.use_feature(subscription, "api-calls", 10)
    clock.advance(days=40)

    # a restart moves the billing window without touching the ledger
    assert subscription_service.start(subscription)

    assert usage_service.get_used_units(subscription, "api-calls") == Decimal("0")
    assert usage_service.get_remaining_units(subscription, "api-calls") == Decimal("10")
    assert usage_service.can_use_feature(subscription, "api-calls", 10)

    entry = usage_service.use_feature(subscription, "api-calls", 4)

    assert entry.used == Decimal("4")
    assert entry.ends_at == subscription.ends_at
    assert usage_service.get_remaining_units(subscription, "api-calls") == Decimal("6")
