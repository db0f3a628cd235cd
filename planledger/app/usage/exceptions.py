"""Errors raised when a subscription tries to use a feature."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from fastapi import HTTPException, status

from ..catalog.models import FeatureRef, feature_slug

Units = Union[int, Decimal]


class CannotUseReason(str, Enum):
    INACTIVE_FEATURE = "inactive_feature"
    DEACTIVATED_USAGE = "deactivated_usage"
    ENDED_USAGE = "ended_usage"
    INSUFFICIENT_BALANCE = "insufficient_balance"


_REASON_MESSAGES = {
    CannotUseReason.INACTIVE_FEATURE: "This feature is inactive for this plan: Only active feature can be used",
    CannotUseReason.DEACTIVATED_USAGE: "Usage of this feature has been deactivated for this subscription",
    CannotUseReason.ENDED_USAGE: "The billing period for this feature has ended: Renew the subscription to use it",
    CannotUseReason.INSUFFICIENT_BALANCE: "Insufficient balance to use this feature",
}


@dataclass(eq=False)
class EntitlementError(Exception):
    """A subscription was refused a feature; carries what was asked for."""

    feature: FeatureRef
    code: str
    message: str
    units: Optional[Units] = None
    status_code: int = status.HTTP_403_FORBIDDEN

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def feature_slug(self) -> str:
        return feature_slug(self.feature)

    @property
    def payload(self) -> Mapping[str, Any]:
        """JSON body for API responses: error code, message, feature slug and, when known, the units."""

        body: Dict[str, Any] = {"error": self.code, "message": self.message, "feature": self.feature_slug}
        if self.units is not None:
            body["units"] = str(self.units)
        return body

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class FeatureNotFoundError(EntitlementError, LookupError):
    """None of the subscription's plans grants the feature."""

    def __init__(self, feature: FeatureRef) -> None:
        super().__init__(
            feature=feature,
            code="feature_not_found",
            message="None of the plans grants access to this feature.",
            status_code=status.HTTP_404_NOT_FOUND,
        )


class CannotUseFeatureError(EntitlementError):
    """The feature is granted but cannot be used for the requested units."""

    def __init__(self, reason: CannotUseReason, feature: FeatureRef, units: Units) -> None:
        self.reason = CannotUseReason(reason)
        super().__init__(
            feature=feature,
            code=self.reason.value,
            message=_REASON_MESSAGES[self.reason],
            units=units,
        )

    @property
    def payload(self) -> Mapping[str, Any]:
        return {**super().payload, "reason": self.reason.value}


class UsageConflictError(RuntimeError):
    """A ledger row changed between read and write."""

    def __init__(self, subscription_id: int, feature_id: int, version: int) -> None:
        self.subscription_id = subscription_id
        self.feature_id = feature_id
        self.version = version
        super().__init__(
            f"Usage for subscription {subscription_id} feature {feature_id} was modified concurrently "
            f"(expected version {version})"
        )


__all__ = [
    "CannotUseFeatureError",
    "CannotUseReason",
    "EntitlementError",
    "FeatureNotFoundError",
    "UsageConflictError",
]
