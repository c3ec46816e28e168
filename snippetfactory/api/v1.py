"""
snippetfactory/api/v1.py

Public API v1 (API key auth, rolling-window rate limit, api_access feature).

Every successful call appends an "api" usage event, which is also what the
rate limiter counts.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from snippetfactory.api.deps import ApiCaller, require_api_key
from snippetfactory.features.rate_limit.service import API_FEATURE
from snippetfactory.features.snippets.service import create_snippet, list_snippets
from snippetfactory.features.usage.service import get_usage_recorder

router = APIRouter(prefix="/api/v1", tags=["v1"])


class V1SnippetCreateRequest(BaseModel):
    title: str
    code: str
    language: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_private: bool = False


def _record_call(caller: ApiCaller, usage_type: str, endpoint: str, method: str, **metadata) -> None:
    get_usage_recorder().dispatch(
        caller.user_id,
        API_FEATURE,
        usage_type,
        metadata={"endpoint": endpoint, "method": method, "api_key_id": caller.key_id, **metadata},
    )


@router.get("/snippets")
def v1_list_snippets(
    language: Optional[str] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    caller: ApiCaller = Depends(require_api_key),
) -> Dict[str, Any]:
    result = list_snippets(caller.user_id, language=language, limit=limit, offset=offset)
    _record_call(caller, "snippets_list", "/api/v1/snippets", "GET")
    return result


@router.post("/snippets", status_code=201)
def v1_create_snippet(
    body: V1SnippetCreateRequest,
    caller: ApiCaller = Depends(require_api_key),
) -> Dict[str, Any]:
    snippet = create_snippet(
        caller.user_id,
        title=body.title,
        code=body.code,
        language=body.language,
        description=body.description,
        tags=body.tags,
        is_private=body.is_private,
    )
    _record_call(caller, "snippet_create", "/api/v1/snippets", "POST", snippet_id=snippet["id"])
    return {"message": "Snippet created successfully", "snippet": snippet}
