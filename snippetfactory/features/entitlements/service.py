"""
snippetfactory/features/entitlements/service.py

Feature gate for boolean plan capabilities.

Handles:
- Resolving the effective plan (lapsed paid plans count as the lowest tier)
- Authorize / deny with the cheapest tier that grants the feature
- Failing closed when the principal store cannot be read

No side effects: callers record usage themselves after the gated action succeeds.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
import logging

from sqlalchemy.exc import SQLAlchemyError

from snippetfactory.core.config import settings
from snippetfactory.core.errors import FeatureGateError, UnauthenticatedError, UpstreamUnavailableError
from snippetfactory.features.plans.service import PlanRegistry, get_plan_registry
from snippetfactory.features.principals.service import effective_plan_id, get_principal
from snippetfactory.models.plan import Feature
from snippetfactory.models.principal import Principal


logger = logging.getLogger(__name__)


class FeatureStatus(str, Enum):
    AUTHORIZED = "AUTHORIZED"
    DENIED = "DENIED"


class DenialReason(str, Enum):
    FEATURE_NOT_IN_PLAN = "feature_not_in_plan"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    UNKNOWN_PRINCIPAL = "unknown_principal"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class FeatureDecision:
    status: FeatureStatus
    feature: Feature
    feature_name: str
    current_plan: Optional[str] = None
    effective_plan: Optional[str] = None
    recommended_plan: Optional[str] = None
    reason: Optional[DenialReason] = None

    @property
    def authorized(self) -> bool:
        return self.status == FeatureStatus.AUTHORIZED

    @property
    def message(self) -> str:
        if self.authorized:
            return f"{self.feature_name} is available"
        if self.reason == DenialReason.STORE_UNAVAILABLE:
            return "Unable to verify your plan right now. Please try again shortly."
        if self.recommended_plan:
            return f"{self.feature_name} requires the {self.recommended_plan} plan or higher"
        return f"{self.feature_name} is not available on any plan"


def evaluate_feature(
    principal: Principal,
    feature: Feature,
    registry: Optional[PlanRegistry] = None,
    now: Optional[datetime] = None,
) -> FeatureDecision:
    """Pure decision for an already-loaded principal."""
    registry = registry or get_plan_registry()
    feature = Feature(feature)
    name = registry.display_name(feature)
    effective = effective_plan_id(principal, now=now, registry=registry)

    if registry.has_feature(effective, feature):
        return FeatureDecision(
            status=FeatureStatus.AUTHORIZED,
            feature=feature,
            feature_name=name,
            current_plan=principal.plan,
            effective_plan=effective,
        )

    if effective != principal.plan and registry.has_feature(principal.plan, feature):
        reason = DenialReason.SUBSCRIPTION_INACTIVE
    else:
        reason = DenialReason.FEATURE_NOT_IN_PLAN
    cheapest = registry.cheapest_plan_with(feature)
    return FeatureDecision(
        status=FeatureStatus.DENIED,
        feature=feature,
        feature_name=name,
        current_plan=principal.plan,
        effective_plan=effective,
        recommended_plan=cheapest.plan_id if cheapest else None,
        reason=reason,
    )


def check_feature(user_id: str, feature: Feature, now: Optional[datetime] = None) -> FeatureDecision:
    """Load the principal and decide. Any storage error is a denial."""
    registry = get_plan_registry()
    feature = Feature(feature)
    try:
        principal = get_principal(user_id)
    except SQLAlchemyError as exc:
        logger.error(
            "[entitlements] principal lookup failed, denying",
            extra={"user_id": user_id, "feature": feature.value, "error": str(exc)},
        )
        return FeatureDecision(
            status=FeatureStatus.DENIED,
            feature=feature,
            feature_name=registry.display_name(feature),
            reason=DenialReason.STORE_UNAVAILABLE,
        )

    if principal is None:
        cheapest = registry.cheapest_plan_with(feature)
        return FeatureDecision(
            status=FeatureStatus.DENIED,
            feature=feature,
            feature_name=registry.display_name(feature),
            recommended_plan=cheapest.plan_id if cheapest else None,
            reason=DenialReason.UNKNOWN_PRINCIPAL,
        )

    decision = evaluate_feature(principal, feature, registry=registry, now=now)
    if not decision.authorized:
        logger.info(
            "[entitlements] feature denied",
            extra={
                "user_id": user_id,
                "feature": feature.value,
                "plan_id": decision.current_plan,
                "effective_plan_id": decision.effective_plan,
                "reason": decision.reason.value if decision.reason else None,
            },
        )
    return decision


def require_feature(user_id: Optional[str], feature: Feature, now: Optional[datetime] = None) -> FeatureDecision:
    """Raise the structured denial for the HTTP layer, or return the grant."""
    if not user_id:
        raise UnauthenticatedError("Authentication required")

    decision = check_feature(user_id, feature, now=now)
    if decision.authorized:
        return decision

    if decision.reason == DenialReason.STORE_UNAVAILABLE:
        raise UpstreamUnavailableError(decision.message)

    raise FeatureGateError(
        decision.message,
        extra={
            "message": decision.message,
            "feature": decision.feature.value,
            "currentPlan": decision.current_plan,
            "recommendedPlan": decision.recommended_plan,
            "upgradeUrl": settings.UPGRADE_URL,
        },
    )
