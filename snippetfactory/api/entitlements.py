"""
Entitlement summary for the signed-in principal.

Drives the dashboard's plan badge, feature toggles and usage meters.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from snippetfactory.core.auth import get_current_user_id
from snippetfactory.core.clock import utc_now
from snippetfactory.core.errors import NotFoundError
from snippetfactory.features.entitlements.service import evaluate_feature
from snippetfactory.features.plans.service import get_plan_registry
from snippetfactory.features.principals.service import effective_plan_id, get_principal, subscription_is_active
from snippetfactory.features.quotas.service import quota_status
from snippetfactory.models.plan import Feature, UNLIMITED


router = APIRouter(prefix="/api", tags=["entitlements"])


def _limit_json(value):
    return "unlimited" if value is UNLIMITED else value


@router.get("/entitlements")
def get_entitlements(user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    principal = get_principal(user_id)
    if principal is None:
        raise NotFoundError("Account not found")

    registry = get_plan_registry()
    now = utc_now()
    effective = effective_plan_id(principal, now=now, registry=registry)
    usage = quota_status(principal, now=now, registry=registry)

    features = {}
    for feature in Feature:
        decision = evaluate_feature(principal, feature, registry=registry, now=now)
        features[feature.value] = {
            "enabled": decision.authorized,
            "name": decision.feature_name,
            "recommendedPlan": decision.recommended_plan,
        }

    return {
        "plan": principal.plan,
        "effectivePlan": effective,
        "subscription": {
            "status": principal.subscription_status.value,
            "expiresAt": principal.subscription_expires_at.isoformat()
            if principal.subscription_expires_at
            else None,
            "active": subscription_is_active(principal, now=now, registry=registry),
        },
        "features": features,
        "limits": {
            resource.value: {
                "current": item.current,
                "max": _limit_json(item.maximum),
                "remaining": _limit_json(item.remaining),
            }
            for resource, item in usage.items()
        },
        "apiRateLimitPerHour": registry.api_rate_limit(effective),
    }
