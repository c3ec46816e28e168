"""
snippetfactory/api/analytics.py

Analytics dashboard data (plans with the analytics feature only).
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from snippetfactory.core.auth import get_current_user_id
from snippetfactory.features.entitlements.service import require_feature
from snippetfactory.features.snippets.service import snippet_stats
from snippetfactory.features.usage.service import get_usage_recorder, summarize_usage
from snippetfactory.models.plan import Feature

router = APIRouter(prefix="/api", tags=["analytics"])


@router.get("/analytics")
def get_analytics(
    window_days: int = Query(30, ge=1, le=365),
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    require_feature(user_id, Feature.ANALYTICS)

    stats = snippet_stats(user_id, window_days=window_days)
    usage = summarize_usage(user_id, window_days=window_days)

    get_usage_recorder().dispatch(user_id, Feature.ANALYTICS.value, "view_dashboard")

    return {
        "summary": {
            "totalSnippets": stats["total_snippets"],
            "byLanguage": stats["by_language"],
        },
        "activityChart": stats["activity"],
        "usage": usage,
        "windowDays": window_days,
    }
