"""
snippetfactory/features/plans/service.py

Plan registry.

Handles:
- Built-in tiers (free < basic < pro < enterprise)
- Optional JSON override via PLAN_REGISTRY_PATH
- Pure lookups: features, limits, cheapest tier granting a feature

The registry is built once per process and never mutated; callers share it
through get_plan_registry().
"""

import json
import logging
from functools import lru_cache
from typing import Dict, FrozenSet, Iterable, List, Optional

from snippetfactory.core.config import settings
from snippetfactory.models.plan import (
    FEATURE_DISPLAY_NAMES,
    Feature,
    Limit,
    PlanDefinition,
    Resource,
    UNLIMITED,
)


logger = logging.getLogger(__name__)


# Default plan configurations
DEFAULT_PLANS = {
    "free": {
        "name": "Free",
        "rank": 0,
        "paid": False,
        "features": [],
        "limits": {
            "snippet": 50,
            "team_member": 1,
        },
        "api_rate_limit_per_hour": 0,
    },
    "basic": {
        "name": "Basic",
        "rank": 1,
        "paid": True,
        "features": ["analytics", "advanced_export"],
        "limits": {
            "snippet": 100,
            "team_member": 1,
        },
        "api_rate_limit_per_hour": 0,
    },
    "pro": {
        "name": "Pro",
        "rank": 2,
        "paid": True,
        "features": [
            "analytics",
            "team_management",
            "ai_generation",
            "api_access",
            "priority_support",
            "advanced_export",
        ],
        "limits": {
            "snippet": "unlimited",
            "team_member": 10,
        },
        "api_rate_limit_per_hour": 100,
    },
    "enterprise": {
        "name": "Enterprise",
        "rank": 3,
        "paid": True,
        "features": [feature.value for feature in Feature],
        "limits": {
            "snippet": "unlimited",
            "team_member": "unlimited",
        },
        "api_rate_limit_per_hour": 10000,
    },
}


class PlanRegistryError(ValueError):
    """Raised when a plan configuration is inconsistent."""


class PlanRegistry:
    """Immutable, ordered set of plan tiers."""

    def __init__(self, plans: Iterable[PlanDefinition]):
        ordered = sorted(plans, key=lambda plan: plan.rank)
        if not ordered:
            raise PlanRegistryError("Plan registry needs at least one plan")

        by_id: Dict[str, PlanDefinition] = {}
        for plan in ordered:
            if plan.plan_id in by_id:
                raise PlanRegistryError(f"Duplicate plan_id: {plan.plan_id}")
            by_id[plan.plan_id] = plan

        ranks = [plan.rank for plan in ordered]
        if len(set(ranks)) != len(ranks):
            raise PlanRegistryError("Plan ranks must be unique")

        if ordered[0].paid:
            raise PlanRegistryError("The lowest-ranked plan must be unpaid (signup default)")

        self._ordered: List[PlanDefinition] = ordered
        self._by_id = by_id

    @classmethod
    def from_mapping(cls, config: Dict[str, dict]) -> "PlanRegistry":
        """Build from {plan_id: {name, rank, paid, features, limits, ...}}."""
        return cls(
            PlanDefinition(plan_id=plan_id, **definition)
            for plan_id, definition in config.items()
        )

    @property
    def lowest_plan(self) -> PlanDefinition:
        return self._ordered[0]

    @property
    def plan_ids(self) -> List[str]:
        return [plan.plan_id for plan in self._ordered]

    def plans(self) -> List[PlanDefinition]:
        return list(self._ordered)

    def is_known(self, plan_id: Optional[str]) -> bool:
        return plan_id in self._by_id

    def get(self, plan_id: Optional[str]) -> PlanDefinition:
        """Resolve a plan; unknown ids resolve to the most restrictive tier."""
        plan = self._by_id.get(plan_id) if plan_id else None
        if plan is None:
            logger.warning(
                "[plans] unknown plan_id, using lowest tier",
                extra={"plan_id": plan_id, "fallback_plan_id": self.lowest_plan.plan_id},
            )
            return self.lowest_plan
        return plan

    def features(self, plan_id: Optional[str]) -> FrozenSet[Feature]:
        return self.get(plan_id).features

    def has_feature(self, plan_id: Optional[str], feature: Feature) -> bool:
        return Feature(feature) in self.get(plan_id).features

    def limit(self, plan_id: Optional[str], resource: Resource) -> Limit:
        return self.get(plan_id).limits[Resource(resource)]

    def api_rate_limit(self, plan_id: Optional[str]) -> int:
        return self.get(plan_id).api_rate_limit_per_hour

    def is_paid(self, plan_id: Optional[str]) -> bool:
        return self.get(plan_id).paid

    def cheapest_plan_with(self, feature: Feature) -> Optional[PlanDefinition]:
        """Lowest-ranked tier granting the feature, or None if no tier does."""
        feature = Feature(feature)
        for plan in self._ordered:
            if feature in plan.features:
                return plan
        return None

    def cheapest_plan_above(self, plan_id: Optional[str], resource: Resource) -> Optional[PlanDefinition]:
        """Lowest-ranked tier whose limit for resource exceeds the given plan's."""
        current = self.get(plan_id)
        current_limit = current.limits[Resource(resource)]
        if current_limit is UNLIMITED:
            return None
        for plan in self._ordered:
            if plan.rank <= current.rank:
                continue
            candidate = plan.limits[Resource(resource)]
            if candidate is UNLIMITED or candidate > current_limit:
                return plan
        return None

    @staticmethod
    def display_name(feature: Feature) -> str:
        return FEATURE_DISPLAY_NAMES[Feature(feature)]


def load_plan_config(path: str) -> Dict[str, dict]:
    """Read a JSON plan file: either {plan_id: {...}} or {"plans": {plan_id: {...}}}."""
    with open(path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict) and "plans" in data:
        data = data["plans"]
    if not isinstance(data, dict):
        raise PlanRegistryError(f"Plan file {path} must contain an object keyed by plan_id")
    return data


@lru_cache(maxsize=1)
def get_plan_registry() -> PlanRegistry:
    """Process-wide registry. Tests reset it with get_plan_registry.cache_clear()."""
    path = settings.PLAN_REGISTRY_PATH
    if path:
        registry = PlanRegistry.from_mapping(load_plan_config(path))
        logger.info("[plans] registry loaded from file", extra={"path": path, "plans": registry.plan_ids})
        return registry
    return PlanRegistry.from_mapping(DEFAULT_PLANS)
