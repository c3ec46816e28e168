"""
Shared request dependencies for programmatic (API key) access.

Order of checks for every v1 call:
1. API key present and well-formed, known and active (401 otherwise)
2. Rolling-window rate limit for the key's owner (429)
3. api_access entitlement on the owner's effective plan (403)

Session endpoints use snippetfactory.core.auth.get_current_user_id.
"""
from datetime import datetime
from typing import Optional

from fastapi import BackgroundTasks, Header, Query, Response
from pydantic import BaseModel

from snippetfactory.core.errors import InvalidCredentialError, UpstreamUnavailableError
from snippetfactory.features.api_keys.service import InvalidKeyReason, touch_last_used, verify_api_key
from snippetfactory.features.entitlements.service import require_feature
from snippetfactory.features.rate_limit.service import enforce_rate
from snippetfactory.models.plan import Feature


class ApiCaller(BaseModel):
    user_id: str
    key_id: str
    rate_limit_per_hour: int
    remaining: int
    reset_at: datetime


def require_api_key(
    response: Response,
    background_tasks: BackgroundTasks,
    x_api_key: Optional[str] = Header(None, description="API key (sf_...)"),
    api_key: Optional[str] = Query(None, description="API key, when a header cannot be set"),
) -> ApiCaller:
    """
    Dependency to require a valid, non-rate-limited API key.

    Sets X-RateLimit-* headers on success; the 429 path carries them on the
    error response. last_used_at is updated after the response is sent.
    """
    raw_key = x_api_key or api_key
    if not raw_key:
        raise InvalidCredentialError(
            "API key required. Provide it in the X-API-Key header or api_key query parameter"
        )

    verification = verify_api_key(raw_key)
    if not verification.valid:
        if verification.reason == InvalidKeyReason.STORE_UNAVAILABLE:
            raise UpstreamUnavailableError("Unable to verify API key right now")
        raise InvalidCredentialError("Invalid or inactive API key")

    background_tasks.add_task(touch_last_used, verification.key_id)

    decision = enforce_rate(verification.user_id, verification.rate_limit_per_hour)
    for name, value in decision.headers().items():
        response.headers[name] = value

    require_feature(verification.user_id, Feature.API_ACCESS)

    return ApiCaller(
        user_id=verification.user_id,
        key_id=verification.key_id,
        rate_limit_per_hour=verification.rate_limit_per_hour,
        remaining=decision.remaining,
        reset_at=decision.reset_at,
    )
