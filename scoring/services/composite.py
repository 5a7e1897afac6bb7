from __future__ import annotations

ACTIVITY_WEIGHT = 0.3
WEIGHT_LOSS_WEIGHT = 0.5
STREAK_WEIGHT = 0.2


def total_score(activity: float, weight_loss: float, streak: float) -> float:
    """Weighted leaderboard total: 0.3×activity + 0.5×weight loss + 0.2×streak."""
    return round(
        activity * ACTIVITY_WEIGHT + weight_loss * WEIGHT_LOSS_WEIGHT + streak * STREAK_WEIGHT,
        2,
    )
