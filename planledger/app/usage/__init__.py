"""Usage ledger package: entries, entitlement errors and the usage service."""

from .exceptions import (
    CannotUseFeatureError,
    CannotUseReason,
    EntitlementError,
    FeatureNotFoundError,
    UsageConflictError,
)
from .models import FeatureUsage
from .service import UsageRepository, UsageService

__all__ = [
    "CannotUseFeatureError",
    "CannotUseReason",
    "EntitlementError",
    "FeatureNotFoundError",
    "FeatureUsage",
    "UsageConflictError",
    "UsageRepository",
    "UsageService",
]
