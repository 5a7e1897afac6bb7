"""Exception hierarchy for the scoring engine.

Every error carries a machine-readable ``code`` and an HTTP status hint so
the API layer can map it without parsing messages.
"""

from __future__ import annotations

from typing import Any


class ScoringError(Exception):
    """Base class for all engine errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(ScoringError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, kind: str, identifier: object):
        super().__init__(
            message=f"{kind} {identifier} not found",
            details={"kind": kind, "id": identifier},
        )


class InvalidPeriodError(ScoringError):
    code = "INVALID_PERIOD"
    status_code = 400

    def __init__(self, value: str):
        super().__init__(
            message=f"Invalid period {value!r}. Expected WEEKLY, MONTHLY or ALL_TIME",
            details={"period": value},
        )


class StoreError(ScoringError):
    code = "STORE_UNAVAILABLE"
    status_code = 503


class IncompletePartitionError(ScoringError):
    code = "PARTITION_INCOMPLETE"
    status_code = 503

    def __init__(self, missing: list[int]):
        super().__init__(
            message=f"Leaderboard partition is missing {len(missing)} freshly written rows",
            details={"missing_member_ids": missing},
        )


class RankBarrierError(ScoringError):
    code = "RANK_BARRIER_FAILED"
    status_code = 503


class CacheBackendError(ScoringError):
    code = "CACHE_BACKEND_ERROR"
    status_code = 500
