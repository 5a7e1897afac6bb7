from __future__ import annotations

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request, Response, status

from api.deps import get_scoring_engine
from api.ratelimit import limiter, rebuild_partition_key
from api.schemas import (
    ActivityHookIn,
    ActivityHookOut,
    HealthOut,
    LeaderboardEntryOut,
    LeaderboardOut,
    LeaderboardStatsOut,
    MatchScoreOut,
    RebuildOut,
    RecommendedGroupOut,
)
from scoring.config import get_settings
from scoring.engine import ScoringEngine
from scoring.services.periods import PeriodKind

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/api/v1")

EngineDep = Annotated[ScoringEngine, Depends(get_scoring_engine)]


@router.get("/health", response_model=HealthOut, tags=["ops"])
def health(request: Request):
    return HealthOut(status="ok", cache_backend=getattr(request.app.state, "cache_backend", "memory"))


@router.get("/groups/{group_id}/leaderboard/{period}", response_model=LeaderboardOut, tags=["leaderboards"])
def get_leaderboard(
    group_id: int,
    period: str,
    engine: EngineDep,
    limit: int = Query(settings.leaderboard_default_limit, ge=1, le=settings.leaderboard_max_limit),
    viewer_id: Optional[int] = None,
):
    page = engine.fetch_leaderboard(group_id, PeriodKind.parse(period), limit=limit, viewer_id=viewer_id)
    snapshot = page.snapshot
    return LeaderboardOut(
        group_id=snapshot.group_id,
        period=snapshot.period,
        period_start=snapshot.period_start,
        period_end=snapshot.period_end,
        entries=[LeaderboardEntryOut.model_validate(e) for e in snapshot.entries],
        self_entry=LeaderboardEntryOut.model_validate(page.self_entry) if page.self_entry else None,
        stats=LeaderboardStatsOut.model_validate(page.stats),
    )


@router.post("/groups/{group_id}/leaderboard/{period}/rebuild", response_model=RebuildOut, tags=["leaderboards"])
@limiter.limit(settings.rebuild_rate_limit, key_func=rebuild_partition_key)
def rebuild_leaderboard(request: Request, response: Response, group_id: int, period: str, engine: EngineDep):
    report = engine.rebuild_leaderboard(group_id, PeriodKind.parse(period))
    return RebuildOut.model_validate(report)


@router.get("/users/{user_id}/recommendations", response_model=list[RecommendedGroupOut], tags=["recommendations"])
def get_recommendations(
    user_id: int,
    engine: EngineDep,
    limit: int = Query(settings.recommendation_default_limit, ge=1, le=50),
):
    return [
        RecommendedGroupOut(
            group_id=rec.group.id,
            name=rec.group.name,
            description=rec.group.description,
            member_count=rec.group.member_count,
            match_score=MatchScoreOut(
                total=rec.score.total,
                goal=rec.score.goal,
                friends=rec.score.friends,
                activity=rec.score.activity,
                location=rec.score.location,
            ),
            reason=rec.reason,
        )
        for rec in engine.recommend_groups(user_id, limit)
    ]


@router.post(
    "/users/{user_id}/recommendations/{group_id}/dismiss",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["recommendations"],
)
def dismiss_recommendation(user_id: int, group_id: int, engine: EngineDep):
    engine.dismiss_recommendation(user_id, group_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/activity", response_model=ActivityHookOut, status_code=status.HTTP_202_ACCEPTED, tags=["hooks"])
def activity_recorded(body: ActivityHookIn, engine: EngineDep):
    removed = engine.activity_recorded(group_id=body.group_id, member_id=body.member_id)
    return ActivityHookOut(invalidated=removed)
