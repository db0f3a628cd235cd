"""Usage ledger entries: consumed units per subscription and feature."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..periods import ensure_aware


class FeatureUsage(BaseModel):
    """One ledger row per ``(subscription, feature)`` pair.

    ``ends_at`` is the reset deadline of the current window; ``None`` means
    the entry never resets. ``version`` is bumped on every save and guards
    concurrent read-modify-write cycles.
    """

    id: Optional[int] = None
    subscription_id: int
    feature_id: int
    used: Decimal = Field(default=Decimal("0"), ge=0)
    ends_at: Optional[datetime] = None
    active: bool = True
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def has_ended(self, now: Optional[datetime] = None) -> bool:
        if self.ends_at is None:
            return False
        moment = ensure_aware(now) if now is not None else datetime.now(timezone.utc)
        return moment >= ensure_aware(self.ends_at)

    def is_active(self) -> bool:
        return self.active

    def is_inactive(self) -> bool:
        return not self.is_active()


__all__ = ["FeatureUsage"]
