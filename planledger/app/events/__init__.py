"""Lifecycle events and the sinks that receive them."""

from .models import (
    FeatureUsed,
    LedgerEvent,
    SubscriptionCancelled,
    SubscriptionCreated,
    SubscriptionPlanChanged,
    SubscriptionReactivated,
    SubscriptionRenewed,
    SubscriptionScheduled,
    SubscriptionStarted,
    SubscriptionTrialStarted,
)
from .sinks import EventDispatcher, EventHandler, EventSink, LoggingEventSink, NullEventSink

__all__ = [
    "EventDispatcher",
    "EventHandler",
    "EventSink",
    "FeatureUsed",
    "LedgerEvent",
    "LoggingEventSink",
    "NullEventSink",
    "SubscriptionCancelled",
    "SubscriptionCreated",
    "SubscriptionPlanChanged",
    "SubscriptionReactivated",
    "SubscriptionRenewed",
    "SubscriptionScheduled",
    "SubscriptionStarted",
    "SubscriptionTrialStarted",
]
