"""Catalog package: features, plans and the grants linking them."""

from .models import Feature, FeatureRef, Plan, PlanFeature, feature_slug
from .service import CatalogRepository, CatalogService

__all__ = [
    "CatalogRepository",
    "CatalogService",
    "Feature",
    "FeatureRef",
    "Plan",
    "PlanFeature",
    "feature_slug",
]
