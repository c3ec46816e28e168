"""
snippetfactory/api/team.py

Team member management (team_management feature; adds bounded by the
team-member quota).
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from snippetfactory.core.auth import get_current_user_id
from snippetfactory.core.errors import NotFoundError, ValidationError
from snippetfactory.features.entitlements.service import require_feature
from snippetfactory.features.principals.service import effective_plan_id, get_principal
from snippetfactory.features.quotas.service import quota_status
from snippetfactory.features.team.service import add_member, list_members, remove_member
from snippetfactory.features.usage.service import get_usage_recorder
from snippetfactory.models.plan import Feature, Resource, UNLIMITED

router = APIRouter(prefix="/api/team", tags=["team"])


class AddMemberRequest(BaseModel):
    email: Optional[str] = None
    role: str = "member"


def _team_stats(user_id: str) -> Dict[str, Any]:
    principal = get_principal(user_id)
    usage = quota_status(principal)[Resource.TEAM_MEMBERS]
    unlimited = usage.maximum is UNLIMITED
    return {
        "currentCount": usage.current,
        "maxMembers": "unlimited" if unlimited else usage.maximum,
        "plan": effective_plan_id(principal),
        "canAddMore": unlimited or usage.current < usage.maximum,
    }


@router.get("/members")
def get_members(user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    require_feature(user_id, Feature.TEAM_MANAGEMENT)
    members = list_members(user_id)
    get_usage_recorder().dispatch(user_id, Feature.TEAM_MANAGEMENT.value, "view_members")
    return {"members": members, "stats": _team_stats(user_id)}


@router.post("/members")
def post_member(body: AddMemberRequest, user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    require_feature(user_id, Feature.TEAM_MANAGEMENT)
    member = add_member(user_id, body.email, role=body.role)
    get_usage_recorder().dispatch(
        user_id,
        Feature.TEAM_MANAGEMENT.value,
        "add_member",
        metadata={"member_id": member["id"]},
    )
    return {"message": "Team member added successfully", "member": member}


@router.delete("/members")
def delete_member(
    id: Optional[str] = Query(None, description="Team member id"),
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    require_feature(user_id, Feature.TEAM_MANAGEMENT)
    if not id:
        raise ValidationError("Member ID is required")
    if not remove_member(user_id, id):
        raise NotFoundError("Team member not found")
    get_usage_recorder().dispatch(
        user_id,
        Feature.TEAM_MANAGEMENT.value,
        "remove_member",
        metadata={"member_id": id},
    )
    return {"message": "Team member removed successfully"}
