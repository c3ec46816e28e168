"""
snippetfactory/features/api_keys/service.py

API key issuance and verification.

Keys look like sf_<64 hex chars>. Only the SHA-256 hex digest of the raw key
is stored, under a unique index, so verification is one indexed equality
lookup. A salted hash (bcrypt) cannot be looked up that way; raw keys carry
256 bits of entropy, so an unsalted digest is sufficient.

Security properties:
- Malformed keys are rejected before any storage access
- Hashing is byte-exact (sf_abc and sf_ABC are different keys)
- Inactive keys are rejected even when the hash matches
- Raw keys never reach logs, errors or storage; logs carry a hash prefix
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
import hashlib
import logging
import re
import secrets

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from snippetfactory.core.clock import ensure_utc, normalize_now
from snippetfactory.core.config import settings
from snippetfactory.core.database import api_keys, session_scope
from snippetfactory.core.errors import NotFoundError, ValidationError
from snippetfactory.features.plans.service import get_plan_registry
from snippetfactory.features.principals.service import effective_plan_id, get_principal
from snippetfactory.features.usage.service import count_usage_events
from snippetfactory.models.api_key import ApiKey, IssuedApiKey


logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 256
MAX_KEY_NAME_LENGTH = 200
_KEY_BODY = re.compile(r"[A-Za-z0-9_-]+")


class InvalidKeyReason(str, Enum):
    MALFORMED = "malformed"
    UNKNOWN = "unknown"
    INACTIVE = "inactive"
    STORE_UNAVAILABLE = "store_unavailable"


@dataclass(frozen=True)
class ApiKeyVerification:
    valid: bool
    user_id: Optional[str] = None
    key_id: Optional[str] = None
    rate_limit_per_hour: Optional[int] = None
    reason: Optional[InvalidKeyReason] = None


def generate_api_key() -> str:
    """New raw key: prefix + 32 random bytes as hex."""
    return f"{settings.API_KEY_PREFIX}{secrets.token_hex(32)}"


def generate_key_id() -> str:
    return f"key_{secrets.token_hex(8)}"


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def hash_prefix(key_hash: str) -> str:
    """Loggable fragment of a key hash."""
    return key_hash[:12]


def is_well_formed(raw_key: Optional[str]) -> bool:
    prefix = settings.API_KEY_PREFIX
    if not raw_key or not isinstance(raw_key, str):
        return False
    if len(raw_key) > MAX_KEY_LENGTH or not raw_key.startswith(prefix):
        return False
    return bool(_KEY_BODY.fullmatch(raw_key[len(prefix):]))


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        key_id=row.key_id,
        user_id=row.user_id,
        name=row.name,
        rate_limit_per_hour=row.rate_limit_per_hour,
        is_active=bool(row.is_active),
        last_used_at=ensure_utc(row.last_used_at),
        revoked_at=ensure_utc(row.revoked_at),
        created_at=ensure_utc(row.created_at),
    )


def verify_api_key(raw_key: Optional[str], *, session: Optional[Session] = None) -> ApiKeyVerification:
    """
    Resolve a presented key to its owner.

    Returns Valid{user_id, key_id, rate_limit_per_hour} or Invalid{reason}.
    Does not touch last_used_at; callers schedule touch_last_used().
    """
    if not is_well_formed(raw_key):
        return ApiKeyVerification(valid=False, reason=InvalidKeyReason.MALFORMED)

    key_hash = hash_api_key(raw_key)
    try:
        with session_scope(session) as db:
            row = db.execute(select(api_keys).where(api_keys.c.key_hash == key_hash)).first()
    except SQLAlchemyError as exc:
        logger.error(
            "[api_keys] lookup failed",
            extra={"key_hash_prefix": hash_prefix(key_hash), "error": str(exc)},
        )
        return ApiKeyVerification(valid=False, reason=InvalidKeyReason.STORE_UNAVAILABLE)

    if row is None:
        logger.info("[api_keys] unknown key", extra={"key_hash_prefix": hash_prefix(key_hash)})
        return ApiKeyVerification(valid=False, reason=InvalidKeyReason.UNKNOWN)

    if not row.is_active:
        logger.info(
            "[api_keys] inactive key presented",
            extra={"key_id": row.key_id, "user_id": row.user_id},
        )
        return ApiKeyVerification(
            valid=False,
            user_id=row.user_id,
            key_id=row.key_id,
            reason=InvalidKeyReason.INACTIVE,
        )

    return ApiKeyVerification(
        valid=True,
        user_id=row.user_id,
        key_id=row.key_id,
        rate_limit_per_hour=row.rate_limit_per_hour,
    )


def touch_last_used(key_id: str, now: Optional[datetime] = None) -> bool:
    """Best-effort last_used_at update. Never raises."""
    try:
        with session_scope() as db:
            db.execute(
                update(api_keys)
                .where(api_keys.c.key_id == key_id)
                .values(last_used_at=normalize_now(now))
            )
        return True
    except Exception as exc:
        logger.warning("[api_keys] last_used_at update failed", extra={"key_id": key_id, "error": str(exc)})
        return False


def create_api_key(
    user_id: str,
    name: str,
    *,
    rate_limit_per_hour: Optional[int] = None,
    now: Optional[datetime] = None,
) -> IssuedApiKey:
    """
    Issue a key for user_id.

    rate_limit_per_hour defaults to the owner's effective plan allowance.
    The raw key is returned once in IssuedApiKey and never stored.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("API key name is required")
    if len(name) > MAX_KEY_NAME_LENGTH:
        raise ValidationError(f"API key name must be at most {MAX_KEY_NAME_LENGTH} characters")

    principal = get_principal(user_id)
    if principal is None:
        raise NotFoundError(f"Principal {user_id} not found")

    if rate_limit_per_hour is None:
        registry = get_plan_registry()
        rate_limit_per_hour = registry.api_rate_limit(effective_plan_id(principal, now=now, registry=registry))
    if rate_limit_per_hour < 0:
        raise ValidationError("rate_limit_per_hour must be >= 0")

    raw_key = generate_api_key()
    key_hash = hash_api_key(raw_key)
    key_id = generate_key_id()
    created_at = normalize_now(now)

    with session_scope() as db:
        db.execute(
            insert(api_keys).values(
                key_id=key_id,
                user_id=user_id,
                name=name,
                key_hash=key_hash,
                rate_limit_per_hour=rate_limit_per_hour,
                is_active=True,
                created_at=created_at,
            )
        )

    logger.info(
        "[api_keys] created",
        extra={"user_id": user_id, "key_id": key_id, "key_hash_prefix": hash_prefix(key_hash)},
    )
    key = ApiKey(
        key_id=key_id,
        user_id=user_id,
        name=name,
        rate_limit_per_hour=rate_limit_per_hour,
        is_active=True,
        created_at=created_at,
    )
    return IssuedApiKey(key=key, raw_key=raw_key)


def list_api_keys(user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    Owner's keys, newest first, with this window's API usage.

    Usage is per principal (all of its keys share one window), matching
    the rate limiter.
    """
    normalized_now = normalize_now(now)
    with session_scope() as db:
        rows = db.execute(
            select(api_keys)
            .where(api_keys.c.user_id == user_id)
            .order_by(api_keys.c.created_at.desc(), api_keys.c.id.desc())
        ).all()

    used = count_usage_events(
        user_id,
        "api",
        since=normalized_now - timedelta(seconds=settings.RATE_LIMIT_WINDOW_SECONDS),
    )
    keys = []
    for row in rows:
        key = _row_to_api_key(row)
        keys.append(
            {
                "key_id": key.key_id,
                "name": key.name,
                "is_active": key.is_active,
                "rate_limit_per_hour": key.rate_limit_per_hour,
                "usage_this_hour": used,
                "remaining_this_hour": max(key.rate_limit_per_hour - used, 0),
                "created_at": key.created_at.isoformat() if key.created_at else None,
                "last_used_at": key.last_used_at.isoformat() if key.last_used_at else None,
                "revoked_at": key.revoked_at.isoformat() if key.revoked_at else None,
            }
        )
    return keys


def revoke_api_key(user_id: str, key_id: str, now: Optional[datetime] = None) -> bool:
    """
    Deactivate a key owned by user_id. The row is kept for audit.

    Returns:
        True if the key was active and is now revoked, False otherwise
    """
    with session_scope() as db:
        result = db.execute(
            update(api_keys)
            .where(api_keys.c.key_id == key_id)
            .where(api_keys.c.user_id == user_id)
            .where(api_keys.c.is_active.is_(True))
            .values(is_active=False, revoked_at=normalize_now(now))
        )
    revoked = result.rowcount > 0
    if revoked:
        logger.info("[api_keys] revoked", extra={"user_id": user_id, "key_id": key_id})
    return revoked
