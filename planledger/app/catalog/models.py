"""Catalog records: features and the plans that grant them."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..periods import Clock, Interval, IntervalType, NoResetIntervalError, period_for


class Feature(BaseModel):
    """A capability a plan can grant, optionally consumable and resetting."""

    id: Optional[int] = None
    slug: str = Field(min_length=1)
    name: str
    consumable: bool = False
    active: bool = True
    reset_interval: Optional[Interval] = Field(
        default=None,
        description="Own reset cadence, independent of the subscription billing cycle.",
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_active(self) -> bool:
        return self.active

    def is_inactive(self) -> bool:
        return not self.is_active()

    def is_recurring(self) -> bool:
        return self.reset_interval is not None

    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def calculate_next_reset_end(
        self,
        anchor: Optional[datetime] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> datetime:
        """Return when usage of this feature resets if the window opens at ``anchor``."""

        if self.reset_interval is None:
            raise NoResetIntervalError(self.slug)
        return period_for(self.reset_interval, anchor, clock=clock).end_date


FeatureRef = Union[Feature, str]


def feature_slug(feature: FeatureRef) -> str:
    return feature if isinstance(feature, str) else feature.slug


class PlanFeature(BaseModel):
    """Join row granting a feature to a plan with an optional unit cap."""

    feature: Feature
    units: Optional[int] = Field(default=None, ge=0, description="None means unlimited.")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_unlimited(self) -> bool:
        return self.units is None


def _default_recurrence() -> Interval:
    return Interval(IntervalType.MONTH, 1)


class Plan(BaseModel):
    """Billing template: price, cadence, trial and grace terms, granted features."""

    id: Optional[int] = None
    slug: str = Field(min_length=1)
    name: str
    active: bool = True
    price: int = Field(default=0, ge=0, description="Amount in minor currency units.")
    currency: str = Field(default="USD", min_length=3, max_length=3)
    recurrence: Interval = Field(default_factory=_default_recurrence)
    trial_period: Optional[Interval] = None
    grace_period: Optional[Interval] = None
    features: Tuple[PlanFeature, ...] = Field(default_factory=tuple)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    def calculate_next_recurrence_end(
        self,
        anchor: Optional[datetime] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> datetime:
        return period_for(self.recurrence, anchor, clock=clock).end_date

    def calculate_trial_period_end(
        self,
        anchor: Optional[datetime] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> Optional[datetime]:
        if self.trial_period is None:
            return None
        return period_for(self.trial_period, anchor, clock=clock).end_date

    def calculate_grace_period_end(
        self,
        anchor: Optional[datetime] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> Optional[datetime]:
        if self.grace_period is None:
            return None
        return period_for(self.grace_period, anchor, clock=clock).end_date

    def has_trial_period(self) -> bool:
        return self.trial_period is not None

    def has_grace_period(self) -> bool:
        return self.grace_period is not None

    def has_same_recurrence(self, other: "Plan") -> bool:
        return self.recurrence == other.recurrence

    def is_free(self) -> bool:
        return self.price <= 0

    def is_active(self) -> bool:
        return self.active

    def is_inactive(self) -> bool:
        return not self.is_active()

    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def get_plan_feature(self, feature: FeatureRef) -> Optional[PlanFeature]:
        slug = feature_slug(feature)
        for grant in self.features:
            if grant.feature.slug == slug:
                return grant
        return None

    def get_feature_by_slug(self, slug: str) -> Optional[Feature]:
        grant = self.get_plan_feature(slug)
        return grant.feature if grant else None

    def grants(self, feature: FeatureRef) -> bool:
        return self.get_plan_feature(feature) is not None

    def feature_ids(self) -> Tuple[int, ...]:
        return tuple(grant.feature.id for grant in self.features if grant.feature.id is not None)


__all__ = ["Feature", "FeatureRef", "Plan", "PlanFeature", "feature_slug"]
