"""
Session auth for the dashboard API.

Validates HS256 JWTs signed with AUTH_JWT_SECRET and extracts user_id from
the 'sub' claim. Falls back to the X-User-Id header when
ALLOW_USER_ID_HEADER is on (development, tests).

Programmatic callers use API keys instead; see snippetfactory/api/deps.py.
"""
from fastapi import Header, Request
from typing import Optional
import jwt
import logging

from snippetfactory.core.config import settings
from snippetfactory.core.errors import UnauthenticatedError
from snippetfactory.features.principals.service import get_or_create_principal

logger = logging.getLogger(__name__)


def verify_session_jwt(token: str) -> dict:
    """
    Verify a session JWT and return its claims.

    Raises:
        UnauthenticatedError: missing secret, bad signature, expired, or no 'sub'
    """
    if not settings.AUTH_JWT_SECRET:
        logger.debug("No AUTH_JWT_SECRET configured, rejecting bearer token")
        raise UnauthenticatedError("Bearer tokens are not accepted by this deployment")

    try:
        claims = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=settings.AUTH_JWT_ALGORITHMS,
            options={"verify_signature": True, "verify_exp": True, "require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthenticatedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthenticatedError("Invalid token")

    if not claims.get("sub"):
        raise UnauthenticatedError("Invalid token")
    return claims


def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test user ID"),
) -> str:
    """
    Resolve the caller's user_id.

    Priority:
    1. Bearer JWT from the Authorization header
    2. X-User-Id header (only when ALLOW_USER_ID_HEADER is on)
    3. UnauthenticatedError (401), before any plan lookup

    The principal row is created on first sight, on the lowest plan.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        claims = verify_session_jwt(auth_header[7:].strip())
        user_id = str(claims["sub"])
        get_or_create_principal(
            user_id,
            email=claims.get("email"),
            display_name=claims.get("name"),
        )
        return user_id

    if x_user_id and settings.ALLOW_USER_ID_HEADER:
        get_or_create_principal(x_user_id)
        return x_user_id

    raise UnauthenticatedError("Missing Authorization (Bearer JWT) or X-User-Id header")
