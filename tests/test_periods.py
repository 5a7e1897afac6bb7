"""Tests for leaderboard period resolution."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from scoring.errors import InvalidPeriodError
from scoring.services.periods import (
    EPOCH,
    PeriodKind,
    next_window,
    previous_window,
    resolve_period,
)


class TestPeriodKind:
    def test_parse_is_case_insensitive(self):
        assert PeriodKind.parse("weekly") is PeriodKind.WEEKLY
        assert PeriodKind.parse(" Monthly ") is PeriodKind.MONTHLY
        assert PeriodKind.parse("ALL_TIME") is PeriodKind.ALL_TIME

    def test_parse_passes_enum_through(self):
        assert PeriodKind.parse(PeriodKind.WEEKLY) is PeriodKind.WEEKLY

    def test_parse_rejects_unknown(self):
        with pytest.raises(InvalidPeriodError) as exc:
            PeriodKind.parse("daily")
        assert exc.value.code == "INVALID_PERIOD"


class TestWeekly:
    def test_midweek_reference(self):
        w = resolve_period(PeriodKind.WEEKLY, datetime(2026, 3, 11, 15, 30))
        assert w.start == datetime(2026, 3, 9)
        assert w.end == datetime(2026, 3, 15, 23, 59, 59, 999999)

    def test_monday_midnight_is_own_week(self):
        w = resolve_period("WEEKLY", datetime(2026, 3, 9, 0, 0))
        assert w.start == datetime(2026, 3, 9)

    def test_sunday_belongs_to_preceding_monday(self):
        w = resolve_period("WEEKLY", datetime(2026, 3, 15, 23, 59))
        assert w.start == datetime(2026, 3, 9)

    def test_week_spanning_year_boundary(self):
        w = resolve_period("WEEKLY", datetime(2026, 1, 1, 8))
        assert w.start == datetime(2025, 12, 29)
        assert w.end.date() == datetime(2026, 1, 4).date()


class TestMonthly:
    def test_regular_month(self):
        w = resolve_period(PeriodKind.MONTHLY, datetime(2026, 3, 11))
        assert w.start == datetime(2026, 3, 1)
        assert w.end == datetime(2026, 3, 31, 23, 59, 59, 999999)

    def test_leap_february(self):
        w = resolve_period(PeriodKind.MONTHLY, datetime(2028, 2, 10))
        assert w.end.date() == datetime(2028, 2, 29).date()

    def test_december(self):
        w = resolve_period(PeriodKind.MONTHLY, datetime(2026, 12, 31, 23, 0))
        assert w.start == datetime(2026, 12, 1)
        assert w.end.date() == datetime(2026, 12, 31).date()


class TestAllTime:
    def test_starts_at_epoch_and_ends_with_reference_day(self):
        w = resolve_period(PeriodKind.ALL_TIME, datetime(2026, 3, 11, 9, 15))
        assert w.start == EPOCH
        assert w.end == datetime(2026, 3, 11, 23, 59, 59, 999999)


class TestWindowProperties:
    @pytest.mark.parametrize("kind", list(PeriodKind))
    def test_start_not_after_end(self, kind):
        ref = datetime(2026, 3, 11, 12)
        for offset in range(0, 120, 7):
            w = resolve_period(kind, ref + timedelta(days=offset))
            assert w.start <= w.end
            assert w.contains(ref + timedelta(days=offset))

    @pytest.mark.parametrize("kind", [PeriodKind.WEEKLY, PeriodKind.MONTHLY])
    def test_adjacent_windows_do_not_overlap(self, kind):
        w = resolve_period(kind, datetime(2026, 3, 11))
        after = next_window(w)
        before = previous_window(w)
        assert w.end < after.start
        assert after.start == w.end_exclusive
        assert before.end < w.start
        assert before.end_exclusive == w.start

    def test_resolution_is_idempotent(self):
        ref = datetime(2026, 3, 11, 12)
        assert resolve_period("WEEKLY", ref) == resolve_period("WEEKLY", ref)
