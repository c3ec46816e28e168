"""
snippetfactory/features/rate_limit/service.py

Rolling-window rate limit for programmatic API calls.

The window is derived from the usage ledger: count "api" usage events with
occurred_at >= now - window. An event older than the window never counts;
there are no fixed hourly buckets.

This is a soft, best-effort control. The count and the later usage write
are separate statements, so a burst of concurrent calls from one principal
can briefly overshoot the limit. Quota reservations are the atomic path;
keep this one cheap. When the ledger cannot be read the call is allowed and
the failure is logged.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError

from snippetfactory.core.clock import normalize_now
from snippetfactory.core.config import settings
from snippetfactory.core.errors import RateLimitError
from snippetfactory.features.usage.service import count_usage_events


logger = logging.getLogger(__name__)

API_FEATURE = "api"


class RateStatus(str, Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


@dataclass(frozen=True)
class RateDecision:
    status: RateStatus
    limit: int
    used: int
    remaining: int
    reset_at: datetime

    @property
    def allowed(self) -> bool:
        return self.status == RateStatus.ALLOWED

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_at.isoformat(),
        }


def _window() -> timedelta:
    return timedelta(seconds=settings.RATE_LIMIT_WINDOW_SECONDS)


def check_rate(user_id: str, limit_per_hour: int, now: Optional[datetime] = None) -> RateDecision:
    """
    Decide whether one more API call fits in the trailing window.

    remaining counts the call being admitted, so the last allowed call
    reports remaining=0.
    """
    normalized_now = normalize_now(now)
    window = _window()
    reset_at = normalized_now + window
    since = normalized_now - window

    try:
        used = count_usage_events(user_id, API_FEATURE, since=since)
    except SQLAlchemyError as exc:
        logger.warning(
            "[rate_limit] usage count failed, allowing",
            extra={"user_id": user_id, "error": str(exc)},
        )
        return RateDecision(
            status=RateStatus.ALLOWED,
            limit=limit_per_hour,
            used=0,
            remaining=max(limit_per_hour - 1, 0),
            reset_at=reset_at,
        )

    if used >= limit_per_hour:
        logger.info(
            "[rate_limit] limit reached",
            extra={"user_id": user_id, "limit": limit_per_hour, "used": used},
        )
        return RateDecision(
            status=RateStatus.DENIED,
            limit=limit_per_hour,
            used=used,
            remaining=0,
            reset_at=reset_at,
        )

    return RateDecision(
        status=RateStatus.ALLOWED,
        limit=limit_per_hour,
        used=used,
        remaining=max(limit_per_hour - used - 1, 0),
        reset_at=reset_at,
    )


def enforce_rate(user_id: str, limit_per_hour: int, now: Optional[datetime] = None) -> RateDecision:
    """check_rate for the HTTP layer: returns the grant or raises a 429."""
    decision = check_rate(user_id, limit_per_hour, now=now)
    if decision.allowed:
        return decision
    raise RateLimitError(
        f"Rate limit exceeded. Limit: {decision.limit} requests per hour",
        extra={
            "limit": decision.limit,
            "remaining": decision.remaining,
            "resetAt": decision.reset_at.isoformat(),
        },
        headers=decision.headers(),
    )
