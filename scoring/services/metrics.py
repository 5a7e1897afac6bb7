"""Per-member metric aggregation for group leaderboards.

Three independent scores are derived from a member's raw history inside a
period window:

- activity: weighted count of posts, comments, likes and messages in the group
- weight loss: drop between the last weigh-in before the window and the
  last one inside it, times 100 (gains floor at zero)
- streak: longest run of consecutive active calendar days, times 5

Calendar days are UTC dates: timestamps are stored as naive UTC and
profiles carry no timezone, so a member active at 23:30 and 00:30 UTC
has two active days wherever they live.

Missing data is never an error; it scores zero.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import Iterable

from scoring.services.periods import PeriodWindow
from scoring.store import ActivityRecord, ScoringStore, WeightSample

ACTIVITY_WEIGHTS: dict[str, int] = {
    "post": 10,
    "comment": 5,
    "like": 2,
    "message": 1,
}
WEIGHT_LOSS_MULTIPLIER = 100
STREAK_DAY_POINTS = 5


@dataclass(frozen=True)
class MemberMetrics:
    member_id: int
    activity_score: float
    weight_loss_score: float
    streak_score: float


# ── Pure scoring ────────────────────────────────────────────────────────

def activity_score(events: Iterable[ActivityRecord]) -> float:
    """10×posts + 5×comments + 2×likes + 1×messages. Other types count 0."""
    counts = Counter(e.event_type for e in events)
    return float(sum(weight * counts.get(kind, 0) for kind, weight in ACTIVITY_WEIGHTS.items()))


def weight_loss_score(baseline: WeightSample | None, current: WeightSample | None) -> float:
    if baseline is None or current is None:
        return 0.0
    loss = baseline.weight - current.weight
    if loss <= 0:
        return 0.0
    return round(loss * WEIGHT_LOSS_MULTIPLIER, 2)


def longest_daily_run(days: Iterable[date]) -> int:
    """Length of the longest run of consecutive calendar days.

    Args:
        days: Active dates (need not be sorted/unique).
    """
    ordered = sorted(set(days))
    if not ordered:
        return 0
    best = current = 1
    for prev, curr in zip(ordered, ordered[1:]):
        if (curr - prev).days == 1:
            current += 1
            best = max(best, current)
        else:
            current = 1
    return best


def streak_score(events: Iterable[ActivityRecord]) -> float:
    return float(longest_daily_run(e.timestamp.date() for e in events) * STREAK_DAY_POINTS)


# ── Store-backed aggregation ────────────────────────────────────────────

def member_activity_score(store: ScoringStore, member_id: int, group_id: int, window: PeriodWindow) -> float:
    return activity_score(store.list_activity_events(member_id, group_id, window.start, window.end))


def member_weight_loss_score(store: ScoringStore, member_id: int, window: PeriodWindow) -> float:
    baseline = store.list_weight_records(member_id, at_or_before=window.start, latest_only=True)
    current = store.list_weight_records(member_id, between=(window.start, window.end), latest_only=True)
    return weight_loss_score(baseline[-1] if baseline else None, current[-1] if current else None)


def member_streak_score(store: ScoringStore, member_id: int, window: PeriodWindow) -> float:
    # Any activity counts toward the streak, whichever group it happened in.
    return streak_score(store.list_activity_events(member_id, None, window.start, window.end))


def compute_member_metrics(
    store: ScoringStore,
    member_id: int,
    group_id: int,
    window: PeriodWindow,
) -> MemberMetrics:
    return MemberMetrics(
        member_id=member_id,
        activity_score=member_activity_score(store, member_id, group_id, window),
        weight_loss_score=member_weight_loss_score(store, member_id, window),
        streak_score=member_streak_score(store, member_id, window),
    )
