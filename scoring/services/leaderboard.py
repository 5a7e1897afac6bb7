"""Group leaderboard builder.

A rebuild resolves the period window, scores every member of the group on a
bounded thread pool, upserts one row per member under the partition's
natural key, and then, once every row is written, assigns ranks 1..N in a
single serial pass. Members whose scoring fails or times out are logged and
skipped; their previous row (if any) stays as it was.
"""

from __future__ import annotations

import logging
import threading
import time
import weakref
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from scoring.config import Settings
from scoring.errors import IncompletePartitionError, NotFoundError, RankBarrierError, StoreError
from scoring.services.composite import total_score
from scoring.services.metrics import compute_member_metrics
from scoring.services.periods import PeriodKind, PeriodWindow, resolve_period, utcnow
from scoring.store import LeaderboardRow, ScoringStore

logger = logging.getLogger(__name__)

PODIUM_SIZE = 3

# Weak values: a partition's lock lives only while a rebuild holds it.
_PARTITION_LOCKS: "weakref.WeakValueDictionary[tuple[int, str, datetime], threading.Lock]" = weakref.WeakValueDictionary()
_PARTITION_LOCKS_GUARD = threading.Lock()


def partition_lock(group_id: int, period: str, period_start: datetime) -> threading.Lock:
    """Process-wide lock serialising writes + ranking of one partition."""
    key = (group_id, period, period_start)
    with _PARTITION_LOCKS_GUARD:
        lock = _PARTITION_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _PARTITION_LOCKS[key] = lock
        return lock


@dataclass
class RebuildReport:
    group_id: int
    period: str
    period_start: datetime
    period_end: datetime
    computed: int
    ranked: int
    failed_member_ids: list[int] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass
class LeaderboardSnapshot:
    """Viewer-independent view of one partition: the top rows plus totals."""

    group_id: int
    period: str
    period_start: datetime
    period_end: datetime
    entries: list[LeaderboardRow]
    participants: int
    top_score: float
    average_score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "period": self.period,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "entries": [e.to_dict() for e in self.entries],
            "participants": self.participants,
            "top_score": self.top_score,
            "average_score": self.average_score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LeaderboardSnapshot":
        return cls(
            group_id=int(data["group_id"]),
            period=str(data["period"]),
            period_start=datetime.fromisoformat(data["period_start"]),
            period_end=datetime.fromisoformat(data["period_end"]),
            entries=[LeaderboardRow.from_dict(e) for e in data["entries"]],
            participants=int(data["participants"]),
            top_score=float(data["top_score"]),
            average_score=float(data["average_score"]),
        )


@dataclass
class LeaderboardStats:
    participants: int
    top_score: float
    average_score: float
    viewer_rank: int | None = None
    viewer_percentile: int | None = None
    gap_to_top: float | None = None
    percent_of_top: int | None = None


@dataclass
class LeaderboardPage:
    snapshot: LeaderboardSnapshot
    self_entry: LeaderboardRow | None
    stats: LeaderboardStats

    @property
    def entries(self) -> list[LeaderboardRow]:
        return self.snapshot.entries


# ── Pure helpers ────────────────────────────────────────────────────────

def _rank_order(row: LeaderboardRow) -> tuple[float, int]:
    return (-row.total_score, row.member_id)


def assign_dense_ranks(rows: Iterable[LeaderboardRow]) -> dict[int, int]:
    """Map member id → rank 1..N by total descending, member id ascending."""
    ordered = sorted(rows, key=_rank_order)
    return {row.member_id: i for i, row in enumerate(ordered, start=1)}


def display_order(rows: Iterable[LeaderboardRow]) -> list[LeaderboardRow]:
    """Ranked rows first by rank; rows not ranked yet trail by score."""
    return sorted(rows, key=lambda r: (r.rank is None, r.rank or 0, -r.total_score, r.member_id))


def podium(entries: list[LeaderboardRow], size: int = PODIUM_SIZE) -> list[LeaderboardRow]:
    """Top finishers of a partition, e.g. for winner notifications."""
    return [e for e in display_order(entries) if e.rank is not None][:size]


def summarize(snapshot: LeaderboardSnapshot, self_entry: LeaderboardRow | None = None) -> LeaderboardStats:
    """Participant totals plus where the viewer stands relative to the top."""
    stats = LeaderboardStats(
        participants=snapshot.participants,
        top_score=snapshot.top_score,
        average_score=snapshot.average_score,
    )
    if self_entry is None or self_entry.rank is None:
        return stats
    n = max(snapshot.participants, self_entry.rank)
    stats.viewer_rank = self_entry.rank
    stats.viewer_percentile = round((n - self_entry.rank + 1) / n * 100)
    stats.gap_to_top = round(max(0.0, snapshot.top_score - self_entry.total_score), 2)
    stats.percent_of_top = round(self_entry.total_score / snapshot.top_score * 100) if snapshot.top_score > 0 else 0
    return stats


# ── Builder ─────────────────────────────────────────────────────────────

class LeaderboardBuilder:
    def __init__(
        self,
        store: ScoringStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock
        self.sleep = sleep

    def _require_group(self, group_id: int) -> None:
        if self.store.get_group(group_id) is None:
            raise NotFoundError("Group", group_id)

    def window(self, kind: PeriodKind | str, reference: datetime | None = None) -> PeriodWindow:
        return resolve_period(kind, reference or self.clock())

    # -- rebuild --

    def _score_member(self, member_id: int, group_id: int, window: PeriodWindow) -> LeaderboardRow:
        m = compute_member_metrics(self.store, member_id, group_id, window)
        return LeaderboardRow(
            group_id=group_id,
            member_id=member_id,
            period=window.kind.value,
            period_start=window.start,
            period_end=window.end,
            activity_score=m.activity_score,
            weight_loss_score=m.weight_loss_score,
            streak_score=m.streak_score,
            total_score=total_score(m.activity_score, m.weight_loss_score, m.streak_score),
        )

    def _score_members(
        self, members: list[int], group_id: int, window: PeriodWindow
    ) -> tuple[list[LeaderboardRow], list[int]]:
        arena: list[LeaderboardRow | None] = [None] * len(members)
        failed: list[int] = []
        if not members:
            return [], failed

        workers = max(1, min(self.settings.rebuild_max_workers, len(members)))
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="leaderboard-member")
        try:
            futures = [pool.submit(self._score_member, m, group_id, window) for m in members]
            for idx, future in enumerate(futures):
                member_id = members[idx]
                try:
                    arena[idx] = future.result(timeout=self.settings.member_timeout_seconds)
                except FutureTimeoutError:
                    future.cancel()
                    failed.append(member_id)
                    logger.warning(
                        "leaderboard_member_failed",
                        extra={"group_id": group_id, "member_id": member_id, "error": "timeout"},
                    )
                except Exception as exc:
                    failed.append(member_id)
                    logger.warning(
                        "leaderboard_member_failed",
                        extra={"group_id": group_id, "member_id": member_id, "error": repr(exc)},
                    )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return [row for row in arena if row is not None], failed

    def _rank_partition(self, group_id: int, window: PeriodWindow, expected: set[int]) -> int:
        period = window.kind.value
        attempts = max(1, self.settings.rank_barrier_attempts)
        for attempt in range(1, attempts + 1):
            try:
                rows = self.store.list_partition(group_id, period, window.start)
                missing = sorted(expected - {r.member_id for r in rows})
                if missing:
                    raise IncompletePartitionError(missing)
                ranks = assign_dense_ranks(rows)
                self.store.write_ranks(group_id, period, window.start, ranks)
                return len(ranks)
            except (IncompletePartitionError, StoreError) as exc:
                if attempt == attempts:
                    raise RankBarrierError(
                        f"Could not rank group {group_id} {period} after {attempts} attempts",
                        details={"group_id": group_id, "period": period, "cause": exc.message},
                    ) from exc
                delay = self.settings.rank_barrier_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "rank_barrier_retry",
                    extra={"group_id": group_id, "period": period, "attempt": attempt, "delay_s": delay, "error": exc.message},
                )
                self.sleep(delay)
        return 0

    def rebuild(self, group_id: int, kind: PeriodKind | str, reference: datetime | None = None) -> RebuildReport:
        """Recompute and rank every member of ``group_id`` for one period."""
        self._require_group(group_id)
        window = self.window(kind, reference)
        members = self.store.list_group_members(group_id)
        started = time.perf_counter()
        logger.info(
            "leaderboard_rebuild_started",
            extra={"group_id": group_id, "period": window.kind.value, "members": len(members)},
        )

        rows, failed = self._score_members(members, group_id, window)

        with partition_lock(group_id, window.kind.value, window.start):
            self.store.upsert_entries(rows)
            ranked = self._rank_partition(group_id, window, {r.member_id for r in rows})

        report = RebuildReport(
            group_id=group_id,
            period=window.kind.value,
            period_start=window.start,
            period_end=window.end,
            computed=len(rows),
            ranked=ranked,
            failed_member_ids=failed,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
        )
        logger.info(
            "leaderboard_rebuild_finished",
            extra={
                "group_id": group_id,
                "period": report.period,
                "computed": report.computed,
                "failed": len(failed),
                "ranked": ranked,
                "duration_ms": report.duration_ms,
            },
        )
        return report

    # -- queries --

    def snapshot(
        self,
        group_id: int,
        kind: PeriodKind | str,
        limit: int,
        reference: datetime | None = None,
        rebuild_if_empty: bool = True,
    ) -> LeaderboardSnapshot:
        self._require_group(group_id)
        window = self.window(kind, reference)
        period = window.kind.value
        rows = self.store.list_partition(group_id, period, window.start)
        if not rows and rebuild_if_empty:
            self.rebuild(group_id, window.kind, reference)
            rows = self.store.list_partition(group_id, period, window.start)

        ordered = display_order(rows)
        totals = [r.total_score for r in rows]
        return LeaderboardSnapshot(
            group_id=group_id,
            period=period,
            period_start=window.start,
            period_end=window.end,
            entries=ordered[: max(0, limit)],
            participants=len(rows),
            top_score=max(totals) if totals else 0.0,
            average_score=round(sum(totals) / len(totals), 2) if totals else 0.0,
        )

    def page(self, snapshot: LeaderboardSnapshot, viewer_id: int | None = None) -> LeaderboardPage:
        """Attach the viewer's own row, even when it falls outside the top rows."""
        self_entry = None
        if viewer_id is not None:
            self_entry = next((e for e in snapshot.entries if e.member_id == viewer_id), None)
            if self_entry is None:
                self_entry = self.store.get_entry(snapshot.group_id, viewer_id, snapshot.period, snapshot.period_start)
        return LeaderboardPage(snapshot=snapshot, self_entry=self_entry, stats=summarize(snapshot, self_entry))

    def fetch(
        self,
        group_id: int,
        kind: PeriodKind | str,
        limit: int,
        viewer_id: int | None = None,
        reference: datetime | None = None,
    ) -> LeaderboardPage:
        return self.page(self.snapshot(group_id, kind, limit, reference), viewer_id)
