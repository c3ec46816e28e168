"""
snippetfactory/models/api_key.py

API key record as exposed to its owner. The raw secret is returned exactly
once at creation and never stored; only its hash lives in api_keys.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ApiKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_id: str
    user_id: str
    name: str
    rate_limit_per_hour: int
    is_active: bool
    last_used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class IssuedApiKey(BaseModel):
    """Creation response: the only place the raw key ever appears."""
    model_config = ConfigDict(frozen=True)

    key: ApiKey
    raw_key: str
