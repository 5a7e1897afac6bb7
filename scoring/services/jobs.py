"""Scheduled leaderboard refresh.

Rebuilds the weekly and monthly leaderboards of every approved group. Meant
to run from cron or a scheduler; one failing group does not stop the rest.

    python -m scoring.services.jobs
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from scoring.errors import ScoringError
from scoring.services.leaderboard import podium
from scoring.services.periods import PeriodKind

logger = logging.getLogger(__name__)

DEFAULT_KINDS = (PeriodKind.WEEKLY, PeriodKind.MONTHLY)


@dataclass
class RefreshSummary:
    groups_processed: int = 0
    entries_updated: int = 0
    failures: list[dict[str, object]] = field(default_factory=list)
    podiums: dict[tuple[int, str], list[int]] = field(default_factory=dict)


def refresh_all_leaderboards(engine, kinds: Iterable[PeriodKind] = DEFAULT_KINDS) -> RefreshSummary:
    """Rebuild every approved group for each period kind.

    ``podiums`` maps (group, period) to the member ids in places 1-3 so the
    caller can hand them to the notification service.
    """
    kinds = [PeriodKind.parse(k) for k in kinds]
    summary = RefreshSummary()
    for group_id in engine.store.list_approved_group_ids():
        summary.groups_processed += 1
        for kind in kinds:
            try:
                report = engine.rebuild_leaderboard(group_id, kind)
                rows = engine.store.list_partition(group_id, kind.value, report.period_start)
            except Exception as exc:
                code = exc.code if isinstance(exc, ScoringError) else "INTERNAL_ERROR"
                logger.exception(
                    "leaderboard_refresh_failed",
                    extra={"group_id": group_id, "period": kind.value, "code": code},
                )
                summary.failures.append({"group_id": group_id, "period": kind.value, "code": code})
                continue
            summary.entries_updated += report.computed
            summary.podiums[(group_id, kind.value)] = [r.member_id for r in podium(rows)]
    logger.info(
        "leaderboard_refresh_finished",
        extra={
            "groups_processed": summary.groups_processed,
            "entries_updated": summary.entries_updated,
            "failures": len(summary.failures),
        },
    )
    return summary


def main() -> None:
    from scoring.config import get_settings
    from scoring.engine import build_engine
    from scoring.logging_config import setup_logging

    settings = get_settings()
    setup_logging(settings.log_level)
    refresh_all_leaderboards(build_engine(settings))


if __name__ == "__main__":
    main()
