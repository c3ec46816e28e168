"""
snippetfactory/features/principals/service.py

Principal lifecycle.

Handles:
- Creation on first authentication (lowest tier, ceilings from the registry)
- Plan assignment from the billing boundary (upgrade / downgrade)
- Subscription state and the effective plan used by every gate
- Expiry sweep that persists the downgrade of lapsed paid plans
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from snippetfactory.core.clock import ensure_utc, normalize_now
from snippetfactory.core.database import session_scope, users as app_users
from snippetfactory.core.errors import NotFoundError, ValidationError
from snippetfactory.features.plans.service import PlanRegistry, get_plan_registry
from snippetfactory.models.plan import Resource, limit_to_column
from snippetfactory.models.principal import Principal, SubscriptionStatus


logger = logging.getLogger(__name__)


def row_to_principal(row) -> Principal:
    return Principal(
        user_id=row.user_id,
        email=row.email,
        display_name=row.display_name,
        plan=row.plan,
        snippet_count=row.snippet_count,
        team_member_count=row.team_member_count,
        max_snippets=row.max_snippets,
        max_team_members=row.max_team_members,
        subscription_status=SubscriptionStatus(row.subscription_status),
        subscription_expires_at=ensure_utc(row.subscription_expires_at),
        created_at=ensure_utc(row.created_at),
    )


def _ceilings(registry: PlanRegistry, plan_id: str) -> dict:
    return {
        "max_snippets": limit_to_column(registry.limit(plan_id, Resource.SNIPPETS)),
        "max_team_members": limit_to_column(registry.limit(plan_id, Resource.TEAM_MEMBERS)),
    }


def get_principal(user_id: str, *, session: Optional[Session] = None) -> Optional[Principal]:
    with session_scope(session) as db:
        row = db.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        return row_to_principal(row) if row else None


def get_principal_by_email(email: str) -> Optional[Principal]:
    with session_scope() as db:
        row = db.execute(select(app_users).where(app_users.c.email == email.strip().lower())).first()
        return row_to_principal(row) if row else None


def get_or_create_principal(
    user_id: str,
    *,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Principal:
    """Return the principal, creating it on the lowest tier if missing."""
    existing = get_principal(user_id)
    if existing:
        return existing

    registry = get_plan_registry()
    lowest = registry.lowest_plan.plan_id
    normalized_now = normalize_now(now)
    email = email.strip().lower() if email else None
    try:
        with session_scope() as db:
            db.execute(
                insert(app_users).values(
                    user_id=user_id,
                    email=email,
                    display_name=display_name,
                    plan=lowest,
                    snippet_count=0,
                    team_member_count=0,
                    subscription_status=SubscriptionStatus.ACTIVE.value,
                    subscription_expires_at=None,
                    created_at=normalized_now,
                    updated_at=normalized_now,
                    **_ceilings(registry, lowest),
                )
            )
    except IntegrityError:
        # Lost a creation race; the other request's row wins
        logger.info("[principals] concurrent create", extra={"user_id": user_id})
    else:
        logger.info("[principals] created", extra={"user_id": user_id, "plan_id": lowest})

    created = get_principal(user_id)
    if created is None:
        raise NotFoundError(f"Principal {user_id} could not be created")
    return created


def assign_plan(
    user_id: str,
    plan_id: str,
    *,
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Principal:
    """
    Move a principal to a plan (billing upgrade/downgrade boundary).

    Rewrites the stored ceilings from the registry. Live counters are left
    alone: a downgrade below the current count keeps creation denied until
    the count drops.
    """
    registry = get_plan_registry()
    if not registry.is_known(plan_id):
        raise ValidationError(f"Unknown plan: {plan_id}")

    status = SubscriptionStatus(subscription_status)
    with session_scope() as db:
        result = db.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(
                plan=plan_id,
                subscription_status=status.value,
                subscription_expires_at=ensure_utc(expires_at),
                updated_at=normalize_now(now),
                **_ceilings(registry, plan_id),
            )
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Principal {user_id} not found")

    logger.info(
        "[principals] plan assigned",
        extra={"user_id": user_id, "plan_id": plan_id, "subscription_status": status.value},
    )
    return get_principal(user_id)


def set_subscription_status(
    user_id: str,
    status: SubscriptionStatus,
    *,
    now: Optional[datetime] = None,
) -> Principal:
    """Record a billing state change (e.g. past_due) without moving plans."""
    status = SubscriptionStatus(status)
    with session_scope() as db:
        result = db.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(subscription_status=status.value, updated_at=normalize_now(now))
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Principal {user_id} not found")
    logger.info("[principals] subscription status", extra={"user_id": user_id, "subscription_status": status.value})
    return get_principal(user_id)


def subscription_is_active(
    principal: Principal,
    now: Optional[datetime] = None,
    registry: Optional[PlanRegistry] = None,
) -> bool:
    """Unpaid plans are always active; paid ones need status=active and a future (or no) expiry."""
    registry = registry or get_plan_registry()
    if not registry.is_paid(principal.plan):
        return True
    if principal.subscription_status != SubscriptionStatus.ACTIVE:
        return False
    expires_at = ensure_utc(principal.subscription_expires_at)
    return expires_at is None or expires_at > normalize_now(now)


def effective_plan_id(
    principal: Principal,
    now: Optional[datetime] = None,
    registry: Optional[PlanRegistry] = None,
) -> str:
    """Plan used for every gate: the lowest tier while a paid subscription has lapsed."""
    registry = registry or get_plan_registry()
    if subscription_is_active(principal, now=now, registry=registry):
        return registry.get(principal.plan).plan_id
    return registry.lowest_plan.plan_id


def downgrade_expired_subscriptions(now: Optional[datetime] = None) -> List[str]:
    """
    Persist the downgrade of every paid principal whose subscription lapsed.

    Gates already treat lapsed plans as the lowest tier; this sweep makes the
    stored plan and ceilings agree. Principals still marked active but past
    their expiry become expired; other lapsed statuses are kept.

    Returns:
        user_ids that were downgraded
    """
    registry = get_plan_registry()
    normalized_now = normalize_now(now)
    lowest = registry.lowest_plan.plan_id
    paid_ids = [plan.plan_id for plan in registry.plans() if plan.paid]
    if not paid_ids:
        return []

    lapsed = or_(
        app_users.c.subscription_status != SubscriptionStatus.ACTIVE.value,
        and_(
            app_users.c.subscription_expires_at.is_not(None),
            app_users.c.subscription_expires_at <= normalized_now,
        ),
    )

    downgraded: List[str] = []
    with session_scope() as db:
        rows = db.execute(
            select(app_users.c.user_id, app_users.c.plan, app_users.c.subscription_status)
            .where(app_users.c.plan.in_(paid_ids))
            .where(lapsed)
        ).all()
        for row in rows:
            status = row.subscription_status
            if status == SubscriptionStatus.ACTIVE.value:
                status = SubscriptionStatus.EXPIRED.value
            db.execute(
                update(app_users)
                .where(app_users.c.user_id == row.user_id)
                .values(
                    plan=lowest,
                    subscription_status=status,
                    updated_at=normalized_now,
                    **_ceilings(registry, lowest),
                )
            )
            downgraded.append(row.user_id)
            logger.info(
                "[principals] subscription downgraded",
                extra={"user_id": row.user_id, "from_plan": row.plan, "to_plan": lowest},
            )
    return downgraded
