"""
snippetfactory/models/principal.py

Principal: the account every entitlement, quota and rate check is made against.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


class Principal(BaseModel):
    """
    Snapshot of an app_users row.

    max_snippets / max_team_members are None when the plan is unlimited.
    Counters are maintained only by quota reservation and release.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    plan: str
    snippet_count: int = 0
    team_member_count: int = 0
    max_snippets: Optional[int] = None
    max_team_members: Optional[int] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    subscription_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
