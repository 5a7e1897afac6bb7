"""User ↔ group compatibility scoring for recommendations.

Four independent factors, summed to a 0-100 total:

- goal (0/20/40): user's weight-loss goal vs. the group's average goal
- friends (0/15/25/30): accepted follows who are already members
- activity (0/10/20): trailing activity level of the user vs. the group
- location (0/10): at least one member from the user's city
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from scoring.config import Settings
from scoring.errors import NotFoundError
from scoring.services.periods import utcnow
from scoring.store import MemberProfile, ScoringStore

# Tunable band edges and points.
GOAL_CLOSE_KG = 10
GOAL_NEAR_KG = 20
GOAL_CLOSE_POINTS = 40
GOAL_NEAR_POINTS = 20

FRIEND_POINTS: dict[int, int] = {0: 0, 1: 15, 2: 25}
FRIEND_MAX_POINTS = 30

ACTIVITY_MEDIUM_MIN = 10
ACTIVITY_HIGH_MIN = 30
ACTIVITY_LEVELS = ("low", "medium", "high")
ACTIVITY_SAME_POINTS = 20
ACTIVITY_ADJACENT_POINTS = 10

LOCATION_POINTS = 10


@dataclass(frozen=True)
class MatchScore:
    group_id: int
    goal: int
    friends: int
    activity: int
    location: int

    @property
    def total(self) -> int:
        return self.goal + self.friends + self.activity + self.location


# ── Band functions ──────────────────────────────────────────────────────

def weight_loss_goal(profile: MemberProfile) -> float | None:
    """start - goal weight, or None when either is unset (0 counts as unset)."""
    if not profile.start_weight or not profile.goal_weight:
        return None
    return profile.start_weight - profile.goal_weight


def goal_match_points(user_goal: float | None, group_average_goal: float | None) -> int:
    if user_goal is None or group_average_goal is None:
        return 0
    difference = abs(user_goal - group_average_goal)
    if difference <= GOAL_CLOSE_KG:
        return GOAL_CLOSE_POINTS
    if difference <= GOAL_NEAR_KG:
        return GOAL_NEAR_POINTS
    return 0


def friend_match_points(friends_in_group: int) -> int:
    return FRIEND_POINTS.get(friends_in_group, FRIEND_MAX_POINTS)


def activity_level(event_count: float) -> str:
    if event_count < ACTIVITY_MEDIUM_MIN:
        return "low"
    if event_count < ACTIVITY_HIGH_MIN:
        return "medium"
    return "high"


def activity_match_points(user_level: str, group_level: str) -> int:
    distance = abs(ACTIVITY_LEVELS.index(user_level) - ACTIVITY_LEVELS.index(group_level))
    if distance == 0:
        return ACTIVITY_SAME_POINTS
    if distance == 1:
        return ACTIVITY_ADJACENT_POINTS
    return 0


def location_match_points(user_city: str | None, member_cities: list[str | None]) -> int:
    if not user_city:
        return 0
    return LOCATION_POINTS if user_city in member_cities else 0


# ── Store-backed scorer ─────────────────────────────────────────────────

class MatchScorer:
    def __init__(
        self,
        store: ScoringStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock

    def _activity_count(self, member_id: int, since: datetime, until: datetime) -> int:
        return len(self.store.list_activity_events(member_id, None, since, until))

    def score(
        self,
        user: MemberProfile,
        group_id: int,
        following: set[int] | None = None,
        now: datetime | None = None,
    ) -> MatchScore:
        """Score ``group_id`` for ``user``.

        ``following`` and ``now`` may be passed in when scoring many groups
        for the same user so they are looked up once per request.
        """
        now = now or self.clock()
        if following is None:
            following = set(self.store.list_following(user.id))

        member_ids = self.store.list_group_members(group_id)
        members = self.store.get_users(member_ids)

        goals = [g for g in (weight_loss_goal(m) for m in members) if g is not None]
        group_goal = sum(goals) / len(goals) if goals else None
        goal = goal_match_points(weight_loss_goal(user), group_goal)

        friends = friend_match_points(len(following.intersection(member_ids)))

        activity = 0
        if member_ids:
            since = now - timedelta(days=self.settings.activity_lookback_days)
            user_count = self._activity_count(user.id, since, now)
            group_avg = sum(self._activity_count(m, since, now) for m in member_ids) / len(member_ids)
            activity = activity_match_points(activity_level(user_count), activity_level(group_avg))

        location = location_match_points(user.city, [m.city for m in members])

        return MatchScore(group_id=group_id, goal=goal, friends=friends, activity=activity, location=location)

    def score_for(self, user_id: int, group_id: int) -> MatchScore:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        if self.store.get_group(group_id) is None:
            raise NotFoundError("Group", group_id)
        return self.score(user, group_id)
