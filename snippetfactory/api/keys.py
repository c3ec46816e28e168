"""
snippetfactory/api/keys.py

API key management for the signed-in owner (api_access feature).
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from snippetfactory.core.auth import get_current_user_id
from snippetfactory.core.errors import NotFoundError
from snippetfactory.features.api_keys.service import create_api_key, list_api_keys, revoke_api_key
from snippetfactory.features.entitlements.service import require_feature
from snippetfactory.models.plan import Feature

router = APIRouter(prefix="/api/keys", tags=["api-keys"])


class GenerateKeyRequest(BaseModel):
    name: str = "Default API Key"


@router.post("/generate")
def generate_key(body: GenerateKeyRequest, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    require_feature(user_id, Feature.API_ACCESS)
    issued = create_api_key(user_id, body.name)
    return {
        "apiKey": issued.raw_key,
        "keyId": issued.key.key_id,
        "name": issued.key.name,
        "rateLimit": issued.key.rate_limit_per_hour,
        "createdAt": issued.key.created_at.isoformat() if issued.key.created_at else None,
        "warning": "Save this API key securely. You will not be able to see it again!",
    }


@router.get("/list")
def list_keys(user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    require_feature(user_id, Feature.API_ACCESS)
    return {"keys": list_api_keys(user_id)}


@router.delete("/{key_id}")
def revoke_key(key_id: str, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    require_feature(user_id, Feature.API_ACCESS)
    if not revoke_api_key(user_id, key_id):
        raise NotFoundError("API key not found or already revoked")
    return {"message": "API key revoked", "keyId": key_id}
