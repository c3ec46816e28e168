"""
snippetfactory/features/snippets/service.py

Snippet persistence behind the snippet quota.

Creation reserves one unit of the snippet quota and inserts the row in the
same transaction; deletion removes the row and releases the unit in the
same transaction. Counters therefore always match the rows that exist.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging
import uuid

from sqlalchemy import delete, func, insert, select

from snippetfactory.core.clock import ensure_utc, normalize_now
from snippetfactory.core.database import get_db_session, session_scope, snippets
from snippetfactory.core.errors import ValidationError
from snippetfactory.features.quotas.service import release, reserve_or_raise
from snippetfactory.models.plan import Resource


logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_CODE_LENGTH = 100_000
MAX_TAGS = 20


def _row_to_dict(row) -> Dict[str, Any]:
    created_at = ensure_utc(row.created_at)
    return {
        "id": row.id,
        "title": row.title,
        "description": row.description,
        "code": row.code,
        "language": row.language,
        "tags": list(row.tags or []),
        "is_private": bool(row.is_private),
        "created_by": row.created_by,
        "created_at": created_at.isoformat() if created_at else None,
    }


def validate_snippet_input(title: Optional[str], code: Optional[str], language: Optional[str], tags=None) -> None:
    if not title or not title.strip():
        raise ValidationError("title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"title must be at most {MAX_TITLE_LENGTH} characters")
    if not code:
        raise ValidationError("code is required")
    if len(code) > MAX_CODE_LENGTH:
        raise ValidationError(f"code must be at most {MAX_CODE_LENGTH} characters")
    if not language or not language.strip():
        raise ValidationError("language is required")
    if tags is not None and len(tags) > MAX_TAGS:
        raise ValidationError(f"at most {MAX_TAGS} tags are allowed")


def create_snippet(
    user_id: str,
    *,
    title: str,
    code: str,
    language: str,
    description: Optional[str] = None,
    tags: Optional[List[str]] = None,
    is_private: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Reserve snippet quota and insert the snippet atomically.

    Raises:
        ValidationError: bad input (nothing reserved)
        QuotaExceededError: snippet limit reached
        UpstreamUnavailableError: quota could not be verified
    """
    validate_snippet_input(title, code, language, tags)
    normalized_now = normalize_now(now)
    snippet_id = str(uuid.uuid4())

    with get_db_session() as session:
        # Reservation first: it takes the write lock before anything else runs
        reserve_or_raise(user_id, Resource.SNIPPETS, session=session, now=normalized_now)
        session.execute(
            insert(snippets).values(
                id=snippet_id,
                created_by=user_id,
                title=title.strip(),
                description=description,
                code=code,
                language=language.strip().lower(),
                tags=list(tags or []),
                is_private=bool(is_private),
                created_at=normalized_now,
            )
        )
        row = session.execute(select(snippets).where(snippets.c.id == snippet_id)).first()

    logger.info("[snippets] created", extra={"user_id": user_id, "snippet_id": snippet_id})
    return _row_to_dict(row)


def list_snippets(
    user_id: str,
    *,
    language: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
) -> Dict[str, Any]:
    """Page through a user's snippets, newest first."""
    limit = max(1, min(limit, 100))
    offset = max(0, offset)
    with session_scope() as session:
        base = select(snippets).where(snippets.c.created_by == user_id)
        if language:
            base = base.where(snippets.c.language == language.lower())
        total = session.execute(
            select(func.count()).select_from(base.subquery())
        ).scalar() or 0
        rows = session.execute(
            base.order_by(snippets.c.created_at.desc(), snippets.c.id).limit(limit).offset(offset)
        ).all()

    return {
        "snippets": [_row_to_dict(row) for row in rows],
        "pagination": {
            "limit": limit,
            "offset": offset,
            "total": int(total),
            "has_more": offset + len(rows) < total,
        },
    }


def delete_snippet(user_id: str, snippet_id: str) -> bool:
    """Delete an owned snippet and release its quota unit in one transaction."""
    with get_db_session() as session:
        result = session.execute(
            delete(snippets)
            .where(snippets.c.id == snippet_id)
            .where(snippets.c.created_by == user_id)
        )
        if result.rowcount == 0:
            return False
        release(user_id, Resource.SNIPPETS, session=session)

    logger.info("[snippets] deleted", extra={"user_id": user_id, "snippet_id": snippet_id})
    return True


def snippet_stats(user_id: str, now: Optional[datetime] = None, window_days: int = 30) -> Dict[str, Any]:
    """Totals by language plus per-day creation counts over the trailing window."""
    normalized_now = normalize_now(now)
    since = normalized_now - timedelta(days=window_days)
    with session_scope() as session:
        by_language = session.execute(
            select(snippets.c.language, func.count())
            .where(snippets.c.created_by == user_id)
            .group_by(snippets.c.language)
        ).all()
        recent = session.execute(
            select(snippets.c.created_at)
            .where(snippets.c.created_by == user_id)
            .where(snippets.c.created_at >= since)
        ).all()

    activity: Dict[str, int] = {}
    for (created_at,) in recent:
        day = ensure_utc(created_at).date().isoformat()
        activity[day] = activity.get(day, 0) + 1

    return {
        "total_snippets": sum(count for _, count in by_language),
        "by_language": {language: count for language, count in by_language},
        "activity": [{"date": day, "snippets": activity[day]} for day in sorted(activity)],
    }
