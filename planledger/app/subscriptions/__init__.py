"""Subscription records and query options.

The lifecycle service lives in :mod:`planledger.app.subscriptions.service`; it
is not re-exported here because the event records depend on these models.
"""

from .models import SubscriberDirectory, SubscriberRef, Subscription, SubscriptionStatus
from .query import SubscriptionQuery

__all__ = [
    "SubscriberDirectory",
    "SubscriberRef",
    "Subscription",
    "SubscriptionQuery",
    "SubscriptionStatus",
]
