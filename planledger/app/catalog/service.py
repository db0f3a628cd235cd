"""Query and toggle layer over the feature/plan catalog."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Sequence

from ..periods import Clock, current_time
from .models import Feature, FeatureRef, Plan, PlanFeature, feature_slug

logger = logging.getLogger(__name__)


class CatalogRepository(Protocol):
    """Persistence operations required by the catalog service."""

    def save_feature(self, feature: Feature) -> Feature:
        ...

    def get_feature(self, feature_id: int) -> Optional[Feature]:
        ...

    def get_feature_by_slug(self, slug: str) -> Optional[Feature]:
        ...

    def list_features(self, *, active: Optional[bool] = None) -> Sequence[Feature]:
        ...

    def set_feature_active(self, feature_id: int, active: bool) -> Optional[Feature]:
        ...

    def soft_delete_feature(self, feature_id: int, deleted_at: datetime) -> bool:
        ...

    def save_plan(self, plan: Plan) -> Plan:
        ...

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        ...

    def get_plan_by_slug(self, slug: str) -> Optional[Plan]:
        ...

    def get_plans(self, plan_ids: Sequence[int]) -> Sequence[Plan]:
        ...

    def list_plans(self, *, active: Optional[bool] = None) -> Sequence[Plan]:
        ...

    def list_plans_granting(self, feature_id: int) -> Sequence[Plan]:
        ...

    def set_plan_active(self, plan_id: int, active: bool) -> Optional[Plan]:
        ...

    def soft_delete_plan(self, plan_id: int, deleted_at: datetime) -> bool:
        ...

    def attach_feature(self, plan_id: int, feature_id: int, units: Optional[int]) -> Plan:
        ...


@dataclass
class CatalogService:
    """Looks up, toggles and links catalog entries."""

    repository: CatalogRepository
    clock: Optional[Clock] = None

    def create_feature(self, feature: Feature) -> Feature:
        return self.repository.save_feature(feature)

    def create_plan(self, plan: Plan) -> Plan:
        return self.repository.save_plan(plan)

    def find_feature_by_slug(self, slug: str) -> Optional[Feature]:
        return self.repository.get_feature_by_slug(slug)

    def list_features(self, active: Optional[bool] = None) -> Sequence[Feature]:
        return self.repository.list_features(active=active)

    def find_plan_by_slug(self, slug: str) -> Optional[Plan]:
        return self.repository.get_plan_by_slug(slug)

    def list_plans(self, active: Optional[bool] = None) -> Sequence[Plan]:
        return self.repository.list_plans(active=active)

    def plans_granting(self, feature: FeatureRef) -> Sequence[Plan]:
        resolved = self._require_feature(feature)
        return self.repository.list_plans_granting(resolved.id)

    def activate_feature(self, feature: FeatureRef) -> Feature:
        return self._toggle_feature(feature, True)

    def deactivate_feature(self, feature: FeatureRef) -> Feature:
        return self._toggle_feature(feature, False)

    def activate_plan(self, plan: Plan | str) -> Plan:
        return self._toggle_plan(plan, True)

    def deactivate_plan(self, plan: Plan | str) -> Plan:
        return self._toggle_plan(plan, False)

    def attach_feature(self, plan: Plan | str, feature: FeatureRef, units: Optional[int] = None) -> PlanFeature:
        """Grant ``feature`` on ``plan``; re-attaching updates the unit cap."""

        if units is not None and units < 0:
            raise ValueError("units must be >= 0")
        resolved_plan = self._require_plan(plan)
        resolved_feature = self._require_feature(feature)
        updated = self.repository.attach_feature(resolved_plan.id, resolved_feature.id, units)
        grant = updated.get_plan_feature(resolved_feature)
        if grant is None:
            raise RuntimeError("Failed to attach feature to plan")
        logger.info(
            "Attached feature %s to plan %s units=%s",
            resolved_feature.slug,
            resolved_plan.slug,
            "unlimited" if units is None else units,
        )
        return grant

    def soft_delete_feature(self, feature: FeatureRef) -> bool:
        resolved = self._require_feature(feature)
        deleted = self.repository.soft_delete_feature(resolved.id, current_time(self.clock))
        if deleted:
            logger.info("Soft deleted feature %s", resolved.slug)
        return deleted

    def soft_delete_plan(self, plan: Plan | str) -> bool:
        resolved = self._require_plan(plan)
        deleted = self.repository.soft_delete_plan(resolved.id, current_time(self.clock))
        if deleted:
            logger.info("Soft deleted plan %s", resolved.slug)
        return deleted

    def _toggle_feature(self, feature: FeatureRef, active: bool) -> Feature:
        resolved = self._require_feature(feature)
        updated = self.repository.set_feature_active(resolved.id, active)
        if updated is None:
            raise LookupError(f"Feature not found: {resolved.slug}")
        logger.info("Feature %s active=%s", updated.slug, updated.active)
        return updated

    def _toggle_plan(self, plan: Plan | str, active: bool) -> Plan:
        resolved = self._require_plan(plan)
        updated = self.repository.set_plan_active(resolved.id, active)
        if updated is None:
            raise LookupError(f"Plan not found: {resolved.slug}")
        logger.info("Plan %s active=%s", updated.slug, updated.active)
        return updated

    def _require_feature(self, feature: FeatureRef) -> Feature:
        if isinstance(feature, Feature) and feature.id is not None:
            return feature
        resolved = self.repository.get_feature_by_slug(feature_slug(feature))
        if resolved is None:
            raise LookupError(f"Feature not found: {feature_slug(feature)}")
        return resolved

    def _require_plan(self, plan: Plan | str) -> Plan:
        if isinstance(plan, Plan) and plan.id is not None:
            return plan
        slug = plan if isinstance(plan, str) else plan.slug
        resolved = self.repository.get_plan_by_slug(slug)
        if resolved is None:
            raise LookupError(f"Plan not found: {slug}")
        return resolved


__all__ = ["CatalogRepository", "CatalogService"]
