"""Leaderboard period resolution.

Turns a period kind and a reference instant into a concrete window. Windows
are Monday-first ISO weeks, calendar months, or everything up to the end of
the reference day. Resolution is pure so the same inputs always land on the
same natural key.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from enum import Enum

from scoring.errors import InvalidPeriodError

EPOCH = datetime(1970, 1, 1)
_LAST_INSTANT = time(23, 59, 59, 999999)


class PeriodKind(str, Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    ALL_TIME = "ALL_TIME"

    @classmethod
    def parse(cls, value: "str | PeriodKind") -> "PeriodKind":
        if isinstance(value, PeriodKind):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise InvalidPeriodError(str(value)) from None


@dataclass(frozen=True)
class PeriodWindow:
    kind: PeriodKind
    start: datetime
    end: datetime

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts <= self.end

    @property
    def end_exclusive(self) -> datetime:
        return self.end + timedelta(microseconds=1)


def _end_of_day(day) -> datetime:
    return datetime.combine(day, _LAST_INSTANT)


def resolve_period(kind: "PeriodKind | str", reference: datetime) -> PeriodWindow:
    """Return the window of ``kind`` that contains ``reference``."""
    kind = PeriodKind.parse(kind)
    day = reference.date()

    if kind is PeriodKind.WEEKLY:
        monday = day - timedelta(days=day.weekday())
        return PeriodWindow(kind, datetime.combine(monday, time.min), _end_of_day(monday + timedelta(days=6)))

    if kind is PeriodKind.MONTHLY:
        first = day.replace(day=1)
        last = day.replace(day=calendar.monthrange(day.year, day.month)[1])
        return PeriodWindow(kind, datetime.combine(first, time.min), _end_of_day(last))

    return PeriodWindow(kind, EPOCH, _end_of_day(day))


def next_window(window: PeriodWindow) -> PeriodWindow:
    """Window of the same kind starting right after ``window`` ends."""
    return resolve_period(window.kind, window.end_exclusive)


def previous_window(window: PeriodWindow) -> PeriodWindow:
    """Window of the same kind ending right before ``window`` starts."""
    if window.kind is PeriodKind.ALL_TIME:
        return resolve_period(window.kind, window.end - timedelta(days=1))
    return resolve_period(window.kind, window.start - timedelta(microseconds=1))


def utcnow() -> datetime:
    """Naive UTC now, matching how timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
