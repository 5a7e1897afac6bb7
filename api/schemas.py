from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class HealthOut(BaseModel):
    status: str
    cache_backend: str


class LeaderboardEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    member_id: int
    rank: Optional[int] = None
    activity_score: float
    weight_loss_score: float
    streak_score: float
    total_score: float


class LeaderboardStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    participants: int
    top_score: float
    average_score: float
    viewer_rank: Optional[int] = None
    viewer_percentile: Optional[int] = None
    gap_to_top: Optional[float] = None
    percent_of_top: Optional[int] = None


class LeaderboardOut(BaseModel):
    group_id: int
    period: str
    period_start: datetime
    period_end: datetime
    entries: list[LeaderboardEntryOut]
    self_entry: Optional[LeaderboardEntryOut] = None
    stats: LeaderboardStatsOut


class RebuildOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    group_id: int
    period: str
    period_start: datetime
    period_end: datetime
    computed: int
    ranked: int
    failed_member_ids: list[int]
    duration_ms: float


class MatchScoreOut(BaseModel):
    total: int
    goal: int
    friends: int
    activity: int
    location: int


class RecommendedGroupOut(BaseModel):
    group_id: int
    name: str
    description: str
    member_count: int
    match_score: MatchScoreOut
    reason: str


class ActivityHookIn(BaseModel):
    group_id: Optional[int] = None
    member_id: Optional[int] = None

    @model_validator(mode="after")
    def _require_target(self):
        if self.group_id is None and self.member_id is None:
            raise ValueError("group_id or member_id is required")
        return self


class ActivityHookOut(BaseModel):
    invalidated: int = Field(ge=0)
