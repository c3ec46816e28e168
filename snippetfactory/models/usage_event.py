"""
snippetfactory/models/usage_event.py

UsageEvent: immutable ledger entry for a billable or rate-limited action.

Feature keys in use:
- api: programmatic v1 calls (drives the rolling-window rate limiter)
- snippets: snippet creation through the session API
- team_management: team member additions

Metadata can include:
- snippet_id / member_id: related resource
- endpoint / method: for api calls
- api_key_id: the key that authenticated the call (never the raw key)
"""

from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class UsageEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    feature: str
    usage_type: str
    quantity: int = 1
    occurred_at: datetime
    metadata: Optional[Dict[str, Any]] = None
