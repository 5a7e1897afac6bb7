"""Entry point wiring store, cache and services together.

``ScoringEngine`` exposes the operations callers use: fetching and
rebuilding leaderboards, recommending groups, and the hooks collaborators
call when new activity lands.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from scoring.cache_utils import RedisCacheBackend, ResultCache, TTLCache
from scoring.config import Settings
from scoring.errors import CacheBackendError, NotFoundError
from scoring.services.leaderboard import LeaderboardBuilder, LeaderboardPage, LeaderboardSnapshot, RebuildReport
from scoring.services.periods import PeriodKind, utcnow
from scoring.services.recommendations import GroupRecommendation, RecommendationRanker
from scoring.store import ScoringStore, SqlScoringStore

logger = logging.getLogger(__name__)


class ScoringEngine:
    def __init__(
        self,
        store: ScoringStore,
        cache: ResultCache,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cache = cache
        self.settings = settings
        self.clock = clock
        self.leaderboards = LeaderboardBuilder(store, settings, clock)
        self.recommendations = RecommendationRanker(store, settings, clock)

    def _clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.settings.leaderboard_default_limit
        return max(1, min(int(limit), self.settings.leaderboard_max_limit))

    def fetch_leaderboard(
        self,
        group_id: int,
        kind: PeriodKind | str,
        limit: int | None = None,
        viewer_id: int | None = None,
    ) -> LeaderboardPage:
        kind = PeriodKind.parse(kind)
        limit = self._clamp_limit(limit)
        window = self.leaderboards.window(kind)
        key = self.cache.leaderboard_key(group_id, kind.value, limit)

        snapshot = self.cache.get_or_compute(
            key,
            lambda: self.leaderboards.snapshot(group_id, kind, limit, reference=window.end),
            encode=LeaderboardSnapshot.to_dict,
            decode=LeaderboardSnapshot.from_dict,
            group_id=group_id,
        )
        if snapshot.period_start != window.start:
            # Cached before the period rolled over.
            self.cache.invalidate_group(group_id, kind.value)
            snapshot = self.cache.get_or_compute(
                key,
                lambda: self.leaderboards.snapshot(group_id, kind, limit, reference=window.end),
                encode=LeaderboardSnapshot.to_dict,
                decode=LeaderboardSnapshot.from_dict,
                group_id=group_id,
            )
        return self.leaderboards.page(snapshot, viewer_id)

    def rebuild_leaderboard(self, group_id: int, kind: PeriodKind | str) -> RebuildReport:
        kind = PeriodKind.parse(kind)
        report = self.leaderboards.rebuild(group_id, kind)
        self.cache.invalidate_group(group_id, kind.value)
        return report

    def recommend_groups(self, user_id: int, max_results: int | None = None) -> list[GroupRecommendation]:
        if max_results is None:
            max_results = self.settings.recommendation_default_limit
        return self.recommendations.recommend(user_id, max_results)

    def dismiss_recommendation(self, user_id: int, group_id: int) -> None:
        self.recommendations.dismiss(user_id, group_id)

    def activity_recorded(self, group_id: int | None = None, member_id: int | None = None) -> int:
        """Drop cached leaderboards a new event or weigh-in may have changed.

        With a group, that group's entries go. Without one (ungrouped
        activity, weigh-ins) every group of ``member_id`` is invalidated,
        since streak and weight-loss scores are not group-scoped.
        """
        if group_id is not None:
            if self.store.get_group(group_id) is None:
                raise NotFoundError("Group", group_id)
            return self.cache.invalidate_group(group_id)
        if member_id is None:
            return 0
        return sum(self.cache.invalidate_group(g) for g in self.store.list_member_group_ids(member_id))


def build_cache(settings: Settings) -> ResultCache:
    """Redis-backed cache when reachable, in-memory otherwise."""
    backend = None
    if settings.cache_backend == "redis":
        try:
            redis_backend = RedisCacheBackend.from_url(settings.redis_url)
            redis_backend.ping()
            backend = redis_backend
            logger.info("cache_backend_initialized", extra={"cache_backend": "redis"})
        except CacheBackendError as exc:
            logger.warning("Redis unavailable, using in-memory cache backend: %s", exc)
    if backend is None:
        backend = TTLCache()
        logger.info("cache_backend_initialized", extra={"cache_backend": "memory"})
    return ResultCache(backend, ttl_seconds=settings.leaderboard_cache_ttl_seconds, prefix=settings.cache_prefix)


def build_engine(settings: Settings, cache: ResultCache | None = None) -> ScoringEngine:
    return ScoringEngine(
        store=SqlScoringStore(settings.database_url),
        cache=cache or build_cache(settings),
        settings=settings,
    )
