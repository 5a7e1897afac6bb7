"""Persistence seam of the engine.

``ScoringStore`` is everything the engine reads from collaborator-owned
tables (members, groups, follows, activity and weight history) plus the
leaderboard rows it owns. ``SqlScoringStore`` backs it with SQLAlchemy;
tests use an in-memory fake with the same shape.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Protocol

from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from scoring.db import session_scope
from scoring.errors import StoreError
from scoring.models import (
    ActivityEvent,
    Follow,
    Group,
    GroupMember,
    LeaderboardEntry,
    RecommendationDismissal,
    User,
    WeightRecord,
)

APPROVED = "approved"
FOLLOW_ACCEPTED = "ACCEPTED"


@dataclass(frozen=True)
class MemberProfile:
    id: int
    goal_weight: float | None = None
    start_weight: float | None = None
    city: str | None = None
    created_at: dt.datetime | None = None


@dataclass(frozen=True)
class GroupInfo:
    id: int
    name: str
    status: str
    member_count: int = 0
    max_members: int | None = None
    description: str = ""


@dataclass(frozen=True)
class ActivityRecord:
    event_type: str
    timestamp: dt.datetime


@dataclass(frozen=True)
class WeightSample:
    weight: float
    timestamp: dt.datetime


@dataclass
class LeaderboardRow:
    group_id: int
    member_id: int
    period: str
    period_start: dt.datetime
    period_end: dt.datetime
    activity_score: float
    weight_loss_score: float
    streak_score: float
    total_score: float
    rank: int | None = None

    @property
    def natural_key(self) -> tuple[int, int, str, dt.datetime]:
        return (self.group_id, self.member_id, self.period, self.period_start)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["period_start"] = self.period_start.isoformat()
        data["period_end"] = self.period_end.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LeaderboardRow":
        return cls(
            group_id=int(data["group_id"]),
            member_id=int(data["member_id"]),
            period=str(data["period"]),
            period_start=dt.datetime.fromisoformat(data["period_start"]),
            period_end=dt.datetime.fromisoformat(data["period_end"]),
            activity_score=float(data["activity_score"]),
            weight_loss_score=float(data["weight_loss_score"]),
            streak_score=float(data["streak_score"]),
            total_score=float(data["total_score"]),
            rank=data.get("rank"),
        )


class ScoringStore(Protocol):
    def get_group(self, group_id: int) -> GroupInfo | None: ...

    def get_user(self, user_id: int) -> MemberProfile | None: ...

    def get_users(self, user_ids: Iterable[int]) -> list[MemberProfile]: ...

    def list_group_members(self, group_id: int) -> list[int]: ...

    def list_member_group_ids(self, user_id: int) -> list[int]: ...

    def list_activity_events(
        self,
        member_id: int,
        group_id: int | None,
        start: dt.datetime,
        end: dt.datetime,
    ) -> list[ActivityRecord]: ...

    def list_weight_records(
        self,
        member_id: int,
        *,
        at_or_before: dt.datetime | None = None,
        between: tuple[dt.datetime, dt.datetime] | None = None,
        latest_only: bool = False,
    ) -> list[WeightSample]: ...

    def list_following(self, user_id: int) -> list[int]: ...

    def list_approved_group_ids(self) -> list[int]: ...

    def list_candidate_groups(self, exclude_ids: set[int], limit: int) -> list[GroupInfo]: ...

    def list_dismissed_group_ids(self, user_id: int) -> list[int]: ...

    def add_dismissal(self, user_id: int, group_id: int) -> None: ...

    def upsert_entries(self, rows: list[LeaderboardRow]) -> None: ...

    def list_partition(self, group_id: int, period: str, period_start: dt.datetime) -> list[LeaderboardRow]: ...

    def write_ranks(self, group_id: int, period: str, period_start: dt.datetime, ranks: dict[int, int]) -> None: ...

    def get_entry(
        self, group_id: int, member_id: int, period: str, period_start: dt.datetime
    ) -> LeaderboardRow | None: ...


def _row_from_model(m: LeaderboardEntry) -> LeaderboardRow:
    return LeaderboardRow(
        group_id=m.group_id,
        member_id=m.user_id,
        period=m.period,
        period_start=m.period_start,
        period_end=m.period_end,
        activity_score=m.activity_score,
        weight_loss_score=m.weight_loss_score,
        streak_score=m.streak_score,
        total_score=m.total_score,
        rank=m.rank,
    )


def _profile_from_model(u: User) -> MemberProfile:
    return MemberProfile(
        id=u.id,
        goal_weight=u.goal_weight,
        start_weight=u.start_weight,
        city=u.city,
        created_at=u.created_at,
    )


class SqlScoringStore:
    """SQLAlchemy implementation of ``ScoringStore``.

    Every call opens its own short session, so the store is safe to share
    between the rebuild worker threads.
    """

    def __init__(self, database_url: str | None = None):
        self.database_url = database_url

    def _session(self):
        return session_scope(self.database_url)

    # ── Members & groups ────────────────────────────────────────────────

    def get_group(self, group_id: int) -> GroupInfo | None:
        with self._session() as s:
            group = s.get(Group, group_id)
            if group is None:
                return None
            count = s.execute(
                select(func.count()).select_from(GroupMember).where(GroupMember.group_id == group_id)
            ).scalar_one()
            return GroupInfo(
                id=group.id,
                name=group.name,
                status=group.status,
                member_count=count,
                max_members=group.max_members,
                description=group.description or "",
            )

    def get_user(self, user_id: int) -> MemberProfile | None:
        with self._session() as s:
            user = s.get(User, user_id)
            return _profile_from_model(user) if user else None

    def get_users(self, user_ids: Iterable[int]) -> list[MemberProfile]:
        ids = list(user_ids)
        if not ids:
            return []
        with self._session() as s:
            rows = s.execute(select(User).where(User.id.in_(ids)).order_by(User.id)).scalars().all()
            return [_profile_from_model(u) for u in rows]

    def list_group_members(self, group_id: int) -> list[int]:
        with self._session() as s:
            return list(
                s.execute(
                    select(GroupMember.user_id)
                    .where(GroupMember.group_id == group_id)
                    .order_by(GroupMember.joined_at, GroupMember.user_id)
                ).scalars()
            )

    def list_member_group_ids(self, user_id: int) -> list[int]:
        with self._session() as s:
            return list(s.execute(select(GroupMember.group_id).where(GroupMember.user_id == user_id)).scalars())

    def list_following(self, user_id: int) -> list[int]:
        with self._session() as s:
            return list(
                s.execute(
                    select(Follow.following_id).where(
                        Follow.follower_id == user_id,
                        Follow.status == FOLLOW_ACCEPTED,
                    )
                ).scalars()
            )

    def list_approved_group_ids(self) -> list[int]:
        with self._session() as s:
            return list(s.execute(select(Group.id).where(Group.status == APPROVED).order_by(Group.id)).scalars())

    def list_candidate_groups(self, exclude_ids: set[int], limit: int) -> list[GroupInfo]:
        member_counts = (
            select(GroupMember.group_id, func.count().label("member_count"))
            .group_by(GroupMember.group_id)
            .subquery()
        )
        count_col = func.coalesce(member_counts.c.member_count, 0)
        q = (
            select(Group, count_col)
            .outerjoin(member_counts, member_counts.c.group_id == Group.id)
            .where(Group.status == APPROVED)
            .where((Group.max_members.is_(None)) | (count_col < Group.max_members))
        )
        if exclude_ids:
            q = q.where(Group.id.not_in(sorted(exclude_ids)))
        with self._session() as s:
            # Busiest groups first, then newest.
            rows = s.execute(
                q.order_by(count_col.desc(), Group.created_at.desc(), Group.id.desc()).limit(limit)
            ).all()
            return [
                GroupInfo(
                    id=g.id,
                    name=g.name,
                    status=g.status,
                    member_count=int(count),
                    max_members=g.max_members,
                    description=g.description or "",
                )
                for g, count in rows
            ]

    # ── Event history ───────────────────────────────────────────────────

    def list_activity_events(
        self,
        member_id: int,
        group_id: int | None,
        start: dt.datetime,
        end: dt.datetime,
    ) -> list[ActivityRecord]:
        q = select(ActivityEvent.event_type, ActivityEvent.created_at).where(
            ActivityEvent.user_id == member_id,
            ActivityEvent.created_at >= start,
            ActivityEvent.created_at <= end,
        )
        if group_id is not None:
            q = q.where(ActivityEvent.group_id == group_id)
        with self._session() as s:
            rows = s.execute(q.order_by(ActivityEvent.created_at, ActivityEvent.id)).all()
            return [ActivityRecord(event_type=t, timestamp=ts) for t, ts in rows]

    def list_weight_records(
        self,
        member_id: int,
        *,
        at_or_before: dt.datetime | None = None,
        between: tuple[dt.datetime, dt.datetime] | None = None,
        latest_only: bool = False,
    ) -> list[WeightSample]:
        q = select(WeightRecord.weight, WeightRecord.created_at).where(WeightRecord.user_id == member_id)
        if at_or_before is not None:
            q = q.where(WeightRecord.created_at <= at_or_before)
        if between is not None:
            q = q.where(and_(WeightRecord.created_at >= between[0], WeightRecord.created_at <= between[1]))
        if latest_only:
            q = q.order_by(WeightRecord.created_at.desc(), WeightRecord.id.desc()).limit(1)
        else:
            q = q.order_by(WeightRecord.created_at, WeightRecord.id)
        with self._session() as s:
            return [WeightSample(weight=w, timestamp=ts) for w, ts in s.execute(q).all()]

    # ── Dismissals ──────────────────────────────────────────────────────

    def list_dismissed_group_ids(self, user_id: int) -> list[int]:
        with self._session() as s:
            return list(
                s.execute(
                    select(RecommendationDismissal.group_id).where(RecommendationDismissal.user_id == user_id)
                ).scalars()
            )

    def add_dismissal(self, user_id: int, group_id: int) -> None:
        try:
            with self._session() as s:
                exists = s.execute(
                    select(RecommendationDismissal.id).where(
                        RecommendationDismissal.user_id == user_id,
                        RecommendationDismissal.group_id == group_id,
                    )
                ).first()
                if exists is None:
                    s.add(RecommendationDismissal(user_id=user_id, group_id=group_id))
        except IntegrityError:
            # A concurrent dismissal of the same pair won the insert.
            pass

    # ── Leaderboard rows ────────────────────────────────────────────────

    def upsert_entries(self, rows: list[LeaderboardRow]) -> None:
        if not rows:
            return
        with self._session() as s:
            for row in rows:
                self._upsert_one(s, row)

    @staticmethod
    def _upsert_one(s: Session, row: LeaderboardRow) -> None:
        existing = s.execute(
            select(LeaderboardEntry)
            .where(
                LeaderboardEntry.group_id == row.group_id,
                LeaderboardEntry.user_id == row.member_id,
                LeaderboardEntry.period == row.period,
                LeaderboardEntry.period_start == row.period_start,
            )
            .with_for_update()
        ).scalar_one_or_none()
        if existing is None:
            s.add(
                LeaderboardEntry(
                    group_id=row.group_id,
                    user_id=row.member_id,
                    period=row.period,
                    period_start=row.period_start,
                    period_end=row.period_end,
                    activity_score=row.activity_score,
                    weight_loss_score=row.weight_loss_score,
                    streak_score=row.streak_score,
                    total_score=row.total_score,
                )
            )
            s.flush()
            return
        existing.period_end = row.period_end
        existing.activity_score = row.activity_score
        existing.weight_loss_score = row.weight_loss_score
        existing.streak_score = row.streak_score
        existing.total_score = row.total_score

    def _partition_query(self, group_id: int, period: str, period_start: dt.datetime):
        return select(LeaderboardEntry).where(
            LeaderboardEntry.group_id == group_id,
            LeaderboardEntry.period == period,
            LeaderboardEntry.period_start == period_start,
        )

    def list_partition(self, group_id: int, period: str, period_start: dt.datetime) -> list[LeaderboardRow]:
        try:
            with self._session() as s:
                rows = s.execute(self._partition_query(group_id, period, period_start)).scalars().all()
                return [_row_from_model(r) for r in rows]
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not read leaderboard partition: {exc}") from exc

    def write_ranks(self, group_id: int, period: str, period_start: dt.datetime, ranks: dict[int, int]) -> None:
        try:
            with self._session() as s:
                rows = s.execute(self._partition_query(group_id, period, period_start).with_for_update()).scalars().all()
                for r in rows:
                    r.rank = ranks.get(r.user_id)
        except SQLAlchemyError as exc:
            raise StoreError(f"Could not write leaderboard ranks: {exc}") from exc

    def get_entry(
        self, group_id: int, member_id: int, period: str, period_start: dt.datetime
    ) -> LeaderboardRow | None:
        with self._session() as s:
            row = s.execute(
                self._partition_query(group_id, period, period_start).where(LeaderboardEntry.user_id == member_id)
            ).scalar_one_or_none()
            return _row_from_model(row) if row else None

