"""Group recommendations for a user.

Candidates are approved groups the user is not in, has not dismissed and
that still have room. The candidate list is capped before scoring so the
cost of a request stays bounded.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from scoring.config import Settings
from scoring.errors import NotFoundError
from scoring.services.matching import MatchScore, MatchScorer
from scoring.services.periods import utcnow
from scoring.store import GroupInfo, ScoringStore

logger = logging.getLogger(__name__)

REASON_SEPARATOR = " • "
FALLBACK_REASON = "Recommended for you"


@dataclass(frozen=True)
class GroupRecommendation:
    group: GroupInfo
    score: MatchScore
    reason: str


def recommendation_reason(score: MatchScore) -> str:
    reasons = []
    if score.goal >= 20:
        reasons.append("Similar weight-loss goals")
    if score.friends > 0:
        reasons.append("Friends of yours are members")
    if score.activity >= 10:
        reasons.append("Matching activity level")
    if score.location > 0:
        reasons.append("Members from your city")
    if not reasons:
        return FALLBACK_REASON
    return REASON_SEPARATOR.join(reasons)


class RecommendationRanker:
    def __init__(
        self,
        store: ScoringStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.scorer = MatchScorer(store, settings, clock)

    def candidates(self, user_id: int) -> list[GroupInfo]:
        excluded = set(self.store.list_member_group_ids(user_id))
        excluded.update(self.store.list_dismissed_group_ids(user_id))
        return self.store.list_candidate_groups(excluded, self.settings.recommendation_candidate_cap)

    def recommend(self, user_id: int, max_results: int) -> list[GroupRecommendation]:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        started = time.perf_counter()
        candidates = self.candidates(user_id)
        following = set(self.store.list_following(user_id))
        now = self.clock()

        scored = [(group, self.scorer.score(user, group.id, following=following, now=now)) for group in candidates]
        scored.sort(key=lambda pair: (-pair[1].total, pair[0].id))

        results = [
            GroupRecommendation(group=group, score=score, reason=recommendation_reason(score))
            for group, score in scored[: max(0, max_results)]
        ]
        logger.info(
            "recommendations_computed",
            extra={
                "user_id": user_id,
                "candidates": len(candidates),
                "returned": len(results),
                "duration_ms": round((time.perf_counter() - started) * 1000.0, 2),
            },
        )
        return results

    def dismiss(self, user_id: int, group_id: int) -> None:
        if self.store.get_user(user_id) is None:
            raise NotFoundError("User", user_id)
        if self.store.get_group(group_id) is None:
            raise NotFoundError("Group", group_id)
        self.store.add_dismissal(user_id, group_id)
