"""
snippetfactory/features/team/service.py

Team membership behind the team-member quota.

Members must already have an account; they are looked up by email. Adding
a member reserves one unit of the owner's team quota in the same
transaction as the insert, so a duplicate (unique owner+user) rolls the
reservation back with it.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
import logging
import uuid

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError

from snippetfactory.core.clock import ensure_utc, normalize_now
from snippetfactory.core.database import get_db_session, session_scope, team_members, users as app_users
from snippetfactory.core.errors import ConflictError, NotFoundError, ValidationError
from snippetfactory.features.principals.service import get_principal_by_email
from snippetfactory.features.quotas.service import release, reserve_or_raise
from snippetfactory.models.plan import Resource


logger = logging.getLogger(__name__)

VALID_ROLES = ("member", "admin", "viewer")


def _member_dict(row) -> Dict[str, Any]:
    joined_at = ensure_utc(row.joined_at)
    return {
        "id": row.id,
        "role": row.role,
        "status": row.status,
        "joined_at": joined_at.isoformat() if joined_at else None,
        "user": {
            "id": row.user_id,
            "email": row.email,
            "display_name": row.display_name,
        },
    }


def _member_query():
    return (
        select(
            team_members.c.id,
            team_members.c.role,
            team_members.c.status,
            team_members.c.joined_at,
            team_members.c.user_id,
            app_users.c.email,
            app_users.c.display_name,
        )
        .select_from(team_members.join(app_users, app_users.c.user_id == team_members.c.user_id))
    )


def list_members(owner_id: str) -> List[Dict[str, Any]]:
    with session_scope() as session:
        rows = session.execute(
            _member_query()
            .where(team_members.c.team_owner_id == owner_id)
            .order_by(team_members.c.joined_at.desc(), team_members.c.id)
        ).all()
    return [_member_dict(row) for row in rows]


def add_member(
    owner_id: str,
    email: Optional[str],
    role: str = "member",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Add an existing account to owner_id's team.

    Raises:
        ValidationError: missing email, bad role, adding yourself
        NotFoundError: no account with that email
        ConflictError: already a member
        QuotaExceededError: team member limit reached
    """
    if not email or not email.strip():
        raise ValidationError("Email is required")
    if role not in VALID_ROLES:
        raise ValidationError(f"role must be one of: {', '.join(VALID_ROLES)}")

    invited = get_principal_by_email(email.strip().lower())
    if invited is None:
        raise NotFoundError("User not found. They need to sign up first.")
    if invited.user_id == owner_id:
        raise ValidationError("You cannot add yourself to your own team")

    member_id = str(uuid.uuid4())
    normalized_now = normalize_now(now)
    try:
        with get_db_session() as session:
            reserve_or_raise(owner_id, Resource.TEAM_MEMBERS, session=session, now=normalized_now)
            session.execute(
                insert(team_members).values(
                    id=member_id,
                    team_owner_id=owner_id,
                    user_id=invited.user_id,
                    role=role,
                    status="active",
                    joined_at=normalized_now,
                )
            )
            row = session.execute(_member_query().where(team_members.c.id == member_id)).first()
    except IntegrityError:
        raise ConflictError("User is already a team member")

    logger.info(
        "[team] member added",
        extra={"user_id": owner_id, "member_user_id": invited.user_id, "member_id": member_id},
    )
    return _member_dict(row)


def remove_member(owner_id: str, member_id: str) -> bool:
    """Remove a member row and release its quota unit in one transaction."""
    with get_db_session() as session:
        result = session.execute(
            delete(team_members)
            .where(team_members.c.id == member_id)
            .where(team_members.c.team_owner_id == owner_id)
        )
        if result.rowcount == 0:
            return False
        release(owner_id, Resource.TEAM_MEMBERS, session=session)

    logger.info("[team] member removed", extra={"user_id": owner_id, "member_id": member_id})
    return True
