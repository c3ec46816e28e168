"""
snippetfactory/api/cron.py

Scheduler hook for the subscription expiry sweep.

Protected by a shared secret: Authorization: Bearer <CRON_SECRET>.
"""

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Header

from snippetfactory.core.clock import utc_now
from snippetfactory.core.config import settings
from snippetfactory.core.errors import ConfigurationError, UnauthenticatedError
from snippetfactory.features.principals.service import downgrade_expired_subscriptions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def _require_cron_secret(authorization: Optional[str]) -> None:
    secret = settings.CRON_SECRET
    if not secret:
        logger.error("[cron] CRON_SECRET not configured")
        raise ConfigurationError("Cron secret not configured")
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise UnauthenticatedError("Unauthorized")


def _run_subscription_check(authorization: Optional[str]) -> Dict[str, Any]:
    _require_cron_secret(authorization)
    now = utc_now()
    downgraded = downgrade_expired_subscriptions(now=now)
    logger.info("[cron] subscription check completed", extra={"downgraded": len(downgraded)})
    return {
        "success": True,
        "message": "Subscription expiry check completed",
        "result": {"downgraded": len(downgraded), "user_ids": downgraded},
        "timestamp": now.isoformat(),
    }


@router.get("/subscription-check")
def subscription_check_get(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    return _run_subscription_check(authorization)


@router.post("/subscription-check")
def subscription_check_post(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    return _run_subscription_check(authorization)
