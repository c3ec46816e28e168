"""
snippetfactory/api/snippets.py

Session-authenticated snippet endpoints. Creation is bounded by the snippet
quota; deletion gives the unit back.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from snippetfactory.core.auth import get_current_user_id
from snippetfactory.core.errors import NotFoundError
from snippetfactory.features.snippets.service import create_snippet, delete_snippet, list_snippets
from snippetfactory.features.usage.service import get_usage_recorder

router = APIRouter(prefix="/api/snippets", tags=["snippets"])


class SnippetCreateRequest(BaseModel):
    title: str
    code: str
    language: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    is_private: bool = False


@router.get("")
def get_snippets(
    language: Optional[str] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    return list_snippets(user_id, language=language, limit=limit, offset=offset)


@router.post("", status_code=201)
def post_snippet(
    body: SnippetCreateRequest,
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    snippet = create_snippet(
        user_id,
        title=body.title,
        code=body.code,
        language=body.language,
        description=body.description,
        tags=body.tags,
        is_private=body.is_private,
    )
    get_usage_recorder().dispatch(
        user_id,
        "snippets",
        "snippet_create",
        metadata={"snippet_id": snippet["id"], "language": snippet["language"]},
    )
    return {"message": "Snippet created successfully", "snippet": snippet}


@router.delete("/{snippet_id}")
def remove_snippet(snippet_id: str, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    if not delete_snippet(user_id, snippet_id):
        raise NotFoundError("Snippet not found")
    return {"message": "Snippet deleted successfully", "id": snippet_id}
