"""
snippetfactory/models/plan.py

Plan tier definitions: boolean feature flags and numeric resource limits.

Features and resources are closed enums. Adding a feature means adding an
enum member AND its display name; the module refuses to import otherwise.
"""

from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Union

from pydantic import BaseModel, ConfigDict, field_validator


class Feature(str, Enum):
    """Boolean capabilities a plan may grant."""
    ANALYTICS = "analytics"
    TEAM_MANAGEMENT = "team_management"
    AI_GENERATION = "ai_generation"
    API_ACCESS = "api_access"
    SSO = "sso"
    WHITE_LABEL = "white_label"
    PRIORITY_SUPPORT = "priority_support"
    ADVANCED_EXPORT = "advanced_export"


FEATURE_DISPLAY_NAMES: Dict[Feature, str] = {
    Feature.ANALYTICS: "Advanced Analytics",
    Feature.TEAM_MANAGEMENT: "Team Management",
    Feature.AI_GENERATION: "AI Code Generation",
    Feature.API_ACCESS: "API Access",
    Feature.SSO: "Single Sign-On (SSO)",
    Feature.WHITE_LABEL: "White Label",
    Feature.PRIORITY_SUPPORT: "Priority Support",
    Feature.ADVANCED_EXPORT: "Advanced Export",
}

_missing_names = set(Feature) - set(FEATURE_DISPLAY_NAMES)
if _missing_names:
    raise RuntimeError(
        f"Missing display names for features: {sorted(f.value for f in _missing_names)}"
    )


class Resource(str, Enum):
    """Count-bounded resources enforced by quota reservation."""
    SNIPPETS = "snippet"
    TEAM_MEMBERS = "team_member"


class Unlimited(Enum):
    """Sentinel for a limit with no ceiling. Never compared as a number."""
    UNLIMITED = "unlimited"

    def __repr__(self) -> str:
        return "UNLIMITED"


UNLIMITED = Unlimited.UNLIMITED

Limit = Union[int, Unlimited]


def parse_limit(value: Any) -> Limit:
    """Accept the config spellings of a limit: int >= 0, -1, None or "unlimited"."""
    if value is None or value is UNLIMITED or value == -1:
        return UNLIMITED
    if isinstance(value, str):
        if value.strip().lower() == "unlimited":
            return UNLIMITED
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Invalid limit value: {value!r}")
    if value < 0:
        raise ValueError(f"Limit must be >= 0 or unlimited, got {value}")
    return value


def limit_to_column(limit: Limit):
    """Stored max columns use NULL for unlimited."""
    return None if limit is UNLIMITED else limit


class PlanDefinition(BaseModel):
    """
    A single tier in the registry.

    rank orders tiers (lower = more restrictive). The lowest-ranked plan is
    the signup default and the fallback for unknown or lapsed plans.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    rank: int
    paid: bool = True
    features: FrozenSet[Feature] = frozenset()
    limits: Mapping[Resource, Limit]
    api_rate_limit_per_hour: int = 0

    @field_validator("limits", mode="before")
    @classmethod
    def _parse_limits(cls, value):
        parsed = {Resource(key): parse_limit(raw) for key, raw in dict(value).items()}
        missing = set(Resource) - set(parsed)
        if missing:
            raise ValueError(f"Plan is missing limits for: {sorted(r.value for r in missing)}")
        return parsed

    @field_validator("limits")
    @classmethod
    def _freeze_limits(cls, value):
        # Read-only: registry plans are shared across every lookup
        return MappingProxyType(dict(value))

    @field_validator("api_rate_limit_per_hour")
    @classmethod
    def _non_negative_rate(cls, value: int) -> int:
        if value < 0:
            raise ValueError("api_rate_limit_per_hour must be >= 0")
        return value
