"""
snippetfactory/features/quotas/service.py

Quota enforcement for count-bounded resources (snippets, team members).

check_and_reserve is a single conditional UPDATE:

    UPDATE app_users SET <count> = <count> + 1
    WHERE user_id = :uid AND <count> is below the effective ceiling

so two concurrent requests can never both take the last slot. The effective
ceiling is the stored max column (NULL = unlimited), or the lowest tier's
limit while a paid subscription has lapsed or the stored plan is unknown to
the registry.

Pass the caller's session to make the reservation and the resource insert
one transaction; a rollback then releases the slot with no compensation
code. On SQLite the UPDATE must be the first statement of that transaction
(a read first would take a shared lock and can deadlock concurrent writers).
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple
import logging

from sqlalchemy import and_, not_, or_, select, true, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from snippetfactory.core.clock import normalize_now
from snippetfactory.core.config import settings
from snippetfactory.core.database import session_scope, users as app_users
from snippetfactory.core.errors import NotFoundError, QuotaExceededError, UpstreamUnavailableError
from snippetfactory.features.plans.service import PlanRegistry, get_plan_registry
from snippetfactory.features.principals.service import (
    effective_plan_id,
    row_to_principal,
    subscription_is_active,
)
from snippetfactory.models.plan import Limit, Resource, UNLIMITED
from snippetfactory.models.principal import Principal, SubscriptionStatus


logger = logging.getLogger(__name__)

# resource -> (counter column, stored ceiling column)
_COLUMNS: Dict[Resource, Tuple[str, str]] = {
    Resource.SNIPPETS: ("snippet_count", "max_snippets"),
    Resource.TEAM_MEMBERS: ("team_member_count", "max_team_members"),
}

_RESOURCE_LABELS = {
    Resource.SNIPPETS: "snippet",
    Resource.TEAM_MEMBERS: "team member",
}


class QuotaStatus(str, Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


class QuotaDenialReason(str, Enum):
    LIMIT_REACHED = "limit_reached"
    UNKNOWN_PRINCIPAL = "unknown_principal"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class QuotaDecision:
    status: QuotaStatus
    resource: Resource
    current: Optional[int] = None
    maximum: Optional[Limit] = None
    plan_id: Optional[str] = None
    reason: Optional[QuotaDenialReason] = None

    @property
    def allowed(self) -> bool:
        return self.status == QuotaStatus.ALLOWED

    @property
    def message(self) -> str:
        label = _RESOURCE_LABELS[self.resource]
        if self.allowed:
            return f"{label} reserved"
        if self.reason == QuotaDenialReason.STORE_UNAVAILABLE:
            return "Unable to verify your plan limits right now. Please try again shortly."
        if self.reason == QuotaDenialReason.UNKNOWN_PRINCIPAL:
            return "Account not found"
        return f"You've reached your {label} limit ({self.maximum}). Upgrade your plan to add more."


@dataclass(frozen=True)
class QuotaUsage:
    resource: Resource
    current: int
    maximum: Limit
    remaining: Limit


def _columns(resource: Resource):
    count_name, max_name = _COLUMNS[Resource(resource)]
    return app_users.c[count_name], app_users.c[max_name]


def _fallback_clause(registry: PlanRegistry, now: datetime):
    """Rows held to the lowest tier's ceiling: unknown plans and lapsed paid plans."""
    paid_ids = [plan.plan_id for plan in registry.plans() if plan.paid]
    unknown = or_(
        app_users.c.plan.is_(None),
        not_(app_users.c.plan.in_(registry.plan_ids)),
    )
    lapsed = and_(
        app_users.c.plan.in_(paid_ids),
        or_(
            app_users.c.subscription_status != SubscriptionStatus.ACTIVE.value,
            and_(
                app_users.c.subscription_expires_at.is_not(None),
                app_users.c.subscription_expires_at <= now,
            ),
        ),
    )
    return or_(unknown, lapsed)


def _within_ceiling_clause(resource: Resource, registry: PlanRegistry, now: datetime):
    count_col, max_col = _columns(resource)
    fallback = _fallback_clause(registry, now)
    within_stored = or_(max_col.is_(None), count_col < max_col)

    fallback_limit = registry.limit(registry.lowest_plan.plan_id, resource)
    if fallback_limit is UNLIMITED:
        within_fallback = true()
    else:
        within_fallback = count_col < fallback_limit

    return or_(
        and_(not_(fallback), within_stored),
        and_(fallback, within_fallback),
    )


def effective_limit(
    principal: Principal,
    resource: Resource,
    now: Optional[datetime] = None,
    registry: Optional[PlanRegistry] = None,
) -> Limit:
    registry = registry or get_plan_registry()
    resource = Resource(resource)
    if not registry.is_known(principal.plan) or not subscription_is_active(principal, now=now, registry=registry):
        return registry.limit(registry.lowest_plan.plan_id, resource)
    stored = getattr(principal, _COLUMNS[resource][1])
    return UNLIMITED if stored is None else stored


def _current_count(principal: Principal, resource: Resource) -> int:
    return getattr(principal, _COLUMNS[Resource(resource)][0])


def check_and_reserve(
    user_id: str,
    resource: Resource,
    *,
    session: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> QuotaDecision:
    """Atomically take one unit of quota, or report why not. Storage errors deny."""
    resource = Resource(resource)
    registry = get_plan_registry()
    normalized_now = normalize_now(now)
    count_col, _ = _columns(resource)

    try:
        with session_scope(session) as db:
            result = db.execute(
                update(app_users)
                .where(app_users.c.user_id == user_id)
                .where(_within_ceiling_clause(resource, registry, normalized_now))
                .values({count_col: count_col + 1})
            )
            reserved = result.rowcount == 1

            row = db.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
    except SQLAlchemyError as exc:
        logger.error(
            "[quotas] reservation failed, denying",
            extra={"user_id": user_id, "resource": resource.value, "error": str(exc)},
        )
        return QuotaDecision(
            status=QuotaStatus.DENIED,
            resource=resource,
            reason=QuotaDenialReason.STORE_UNAVAILABLE,
        )

    if row is None:
        return QuotaDecision(
            status=QuotaStatus.DENIED,
            resource=resource,
            reason=QuotaDenialReason.UNKNOWN_PRINCIPAL,
        )

    principal = row_to_principal(row)
    maximum = effective_limit(principal, resource, now=normalized_now, registry=registry)
    current = _current_count(principal, resource)
    plan_id = effective_plan_id(principal, now=normalized_now, registry=registry)

    if reserved:
        return QuotaDecision(
            status=QuotaStatus.ALLOWED,
            resource=resource,
            current=current,
            maximum=maximum,
            plan_id=plan_id,
        )

    logger.info(
        "[quotas] limit reached",
        extra={
            "user_id": user_id,
            "resource": resource.value,
            "current": current,
            "max": maximum if maximum is not UNLIMITED else "unlimited",
            "plan_id": plan_id,
        },
    )
    return QuotaDecision(
        status=QuotaStatus.DENIED,
        resource=resource,
        current=current,
        maximum=maximum,
        plan_id=plan_id,
        reason=QuotaDenialReason.LIMIT_REACHED,
    )


def reserve_or_raise(
    user_id: str,
    resource: Resource,
    *,
    session: Optional[Session] = None,
    now: Optional[datetime] = None,
) -> QuotaDecision:
    """check_and_reserve for the HTTP layer: returns the grant or raises the structured denial."""
    decision = check_and_reserve(user_id, resource, session=session, now=now)
    if decision.allowed:
        return decision
    if decision.reason == QuotaDenialReason.STORE_UNAVAILABLE:
        raise UpstreamUnavailableError(decision.message)
    if decision.reason == QuotaDenialReason.UNKNOWN_PRINCIPAL:
        raise NotFoundError(decision.message)
    upgrade = get_plan_registry().cheapest_plan_above(decision.plan_id, decision.resource)
    raise QuotaExceededError(
        decision.message,
        extra={
            "message": decision.message,
            "resource": decision.resource.value,
            "currentCount": decision.current,
            "maxCount": decision.maximum,
            "currentPlan": decision.plan_id,
            "recommendedPlan": upgrade.plan_id if upgrade else None,
            "upgradeUrl": settings.UPGRADE_URL,
        },
    )


def release(user_id: str, resource: Resource, *, session: Optional[Session] = None) -> bool:
    """
    Give one unit back (resource deleted). Never goes below zero.

    Returns:
        True if a unit was released, False if the counter was already zero
    """
    resource = Resource(resource)
    count_col, _ = _columns(resource)
    with session_scope(session) as db:
        result = db.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .where(count_col > 0)
            .values({count_col: count_col - 1})
        )
    released = result.rowcount == 1
    if not released:
        logger.warning(
            "[quotas] release at zero ignored",
            extra={"user_id": user_id, "resource": resource.value},
        )
    return released


def quota_status(
    principal: Principal,
    now: Optional[datetime] = None,
    registry: Optional[PlanRegistry] = None,
) -> Dict[Resource, QuotaUsage]:
    """Current / max / remaining per resource, for display."""
    registry = registry or get_plan_registry()
    usage: Dict[Resource, QuotaUsage] = {}
    for resource in Resource:
        current = _current_count(principal, resource)
        maximum = effective_limit(principal, resource, now=now, registry=registry)
        remaining = UNLIMITED if maximum is UNLIMITED else max(maximum - current, 0)
        usage[resource] = QuotaUsage(resource=resource, current=current, maximum=maximum, remaining=remaining)
    return usage
