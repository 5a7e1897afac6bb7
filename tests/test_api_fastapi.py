from __future__ import annotations

import sys
from datetime import datetime, timedelta

from fastapi.testclient import TestClient

from scoring.cache_utils import ResultCache, TTLCache
from scoring.config import Settings
from scoring.engine import ScoringEngine
from tests.fakes import BrokenPartitionStore, InMemoryStore

NOW = datetime(2026, 3, 11, 12, 0, 0)


def _purge_api_modules() -> None:
    for name in [
        "api.main",
        "api.routes",
        "api.ratelimit",
    ]:
        sys.modules.pop(name, None)


def _settings() -> Settings:
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        app_env="test",
        cache_backend="memory",
        rank_barrier_backoff_seconds=0.0,
    )


def _seeded_store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_user(1, start_weight=100, goal_weight=85, city="Leeds")
    store.add_user(2, start_weight=95, goal_weight=80, city="Leeds")
    store.add_group(10, name="Leeds Walkers", members=[2, 3, 4])
    store.add_group(11, name="Night Owls", members=[5])
    store.add_group(12, name="Home", members=[1])
    for member_id, posts in {2: 3, 3: 1, 4: 2}.items():
        for _ in range(posts):
            store.log(member_id, "post", NOW - timedelta(hours=2), group_id=10)
    return store


def _build_client(monkeypatch, store: InMemoryStore | None = None) -> TestClient:
    monkeypatch.setenv("APP_ENV", "test")
    _purge_api_modules()
    from api.main import create_app

    settings = _settings()
    engine = ScoringEngine(store or _seeded_store(), ResultCache(TTLCache()), settings, clock=lambda: NOW)
    return TestClient(create_app(settings=settings, engine=engine))


def test_health_echoes_or_generates_request_id_header(monkeypatch):
    with _build_client(monkeypatch) as client:
        resp = client.get("/api/v1/health", headers={"X-Request-ID": "req-test-123"})
        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == "req-test-123"
        assert resp.json() == {"status": "ok", "cache_backend": "memory"}

        generated = client.get("/api/v1/health")
        assert generated.headers.get("X-Request-ID")


def test_leaderboard_ranks_members(monkeypatch):
    with _build_client(monkeypatch) as client:
        resp = client.get("/api/v1/groups/10/leaderboard/weekly")
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["period"] == "WEEKLY"
        assert body["period_start"].startswith("2026-03-09T00:00:00")
        assert [e["member_id"] for e in body["entries"]] == [2, 4, 3]
        assert [e["rank"] for e in body["entries"]] == [1, 2, 3]
        assert body["stats"]["participants"] == 3
        assert body["self_entry"] is None


def test_leaderboard_viewer_outside_limit(monkeypatch):
    with _build_client(monkeypatch) as client:
        resp = client.get("/api/v1/groups/10/leaderboard/WEEKLY", params={"limit": 1, "viewer_id": 3})
        body = resp.json()
        assert [e["member_id"] for e in body["entries"]] == [2]
        assert body["self_entry"]["member_id"] == 3
        assert body["self_entry"]["rank"] == 3
        assert body["stats"]["viewer_rank"] == 3
        assert body["stats"]["viewer_percentile"] == 33


def test_leaderboard_errors(monkeypatch):
    with _build_client(monkeypatch) as client:
        bad_period = client.get("/api/v1/groups/10/leaderboard/yearly")
        assert bad_period.status_code == 400
        assert bad_period.json()["detail"]["code"] == "INVALID_PERIOD"

        missing = client.get("/api/v1/groups/999/leaderboard/weekly")
        assert missing.status_code == 404
        assert missing.json()["detail"]["code"] == "NOT_FOUND"

        too_big = client.get("/api/v1/groups/10/leaderboard/weekly", params={"limit": 10_000})
        assert too_big.status_code == 422


def test_rebuild_endpoint(monkeypatch):
    store = _seeded_store()
    with _build_client(monkeypatch, store) as client:
        client.get("/api/v1/groups/10/leaderboard/weekly")
        for _ in range(5):
            store.log(3, "post", NOW - timedelta(minutes=10), group_id=10)

        resp = client.post("/api/v1/groups/10/leaderboard/weekly/rebuild")
        assert resp.status_code == 200, resp.text
        report = resp.json()
        assert report["computed"] == 3
        assert report["ranked"] == 3
        assert report["failed_member_ids"] == []

        board = client.get("/api/v1/groups/10/leaderboard/weekly").json()
        assert board["entries"][0]["member_id"] == 3


def test_rank_barrier_failure_maps_to_503(monkeypatch):
    store = BrokenPartitionStore()
    store.add_group(10, members=[1])
    with _build_client(monkeypatch, store) as client:
        resp = client.post("/api/v1/groups/10/leaderboard/monthly/rebuild")
        assert resp.status_code == 503
        assert resp.json()["detail"]["code"] == "RANK_BARRIER_FAILED"


def test_recommendations_and_dismiss(monkeypatch):
    with _build_client(monkeypatch) as client:
        resp = client.get("/api/v1/users/1/recommendations")
        assert resp.status_code == 200, resp.text
        recs = resp.json()
        assert [r["group_id"] for r in recs] == [10, 11]
        top = recs[0]
        assert top["name"] == "Leeds Walkers"
        assert top["member_count"] == 3
        assert top["match_score"]["location"] == 10
        assert "Members from your city" in top["reason"]

        dismissed = client.post("/api/v1/users/1/recommendations/10/dismiss")
        assert dismissed.status_code == 204
        again = client.get("/api/v1/users/1/recommendations").json()
        assert [r["group_id"] for r in again] == [11]


def test_recommendations_unknown_user(monkeypatch):
    with _build_client(monkeypatch) as client:
        resp = client.get("/api/v1/users/404/recommendations")
        assert resp.status_code == 404


def test_activity_hook(monkeypatch):
    with _build_client(monkeypatch) as client:
        client.get("/api/v1/groups/10/leaderboard/weekly")
        resp = client.post("/api/v1/activity", json={"group_id": 10})
        assert resp.status_code == 202
        assert resp.json() == {"invalidated": 1}

        assert client.post("/api/v1/activity", json={}).status_code == 422
        assert client.post("/api/v1/activity", json={"group_id": 999}).status_code == 404


def test_sql_backed_app(tmp_path, monkeypatch):
    db_path = tmp_path / "api.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+pysqlite:///{db_path}")
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("CORS_ORIGINS", "http://localhost:5173")

    from scoring.db import reset_engines, session_scope
    from scoring.models import Group, GroupMember, User

    reset_engines()
    _purge_api_modules()
    from api.main import create_app

    with TestClient(create_app()) as client:
        with session_scope() as s:
            s.add_all([User(id=1, username="ana"), User(id=2, username="ben"), Group(id=10, name="Walkers", status="approved")])
            s.flush()
            s.add_all([GroupMember(group_id=10, user_id=1), GroupMember(group_id=10, user_id=2)])

        board = client.get("/api/v1/groups/10/leaderboard/all_time")
        assert board.status_code == 200, board.text
        assert [e["member_id"] for e in board.json()["entries"]] == [1, 2]

        recs = client.get("/api/v1/users/1/recommendations")
        assert recs.status_code == 200
        assert recs.json() == []
    reset_engines()


def test_rebuilds_are_throttled_per_partition(monkeypatch):
    monkeypatch.setenv("APP_ENV", "staging")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("REBUILD_RATE_LIMIT", "2/minute")
    _purge_api_modules()
    from api.main import create_app

    settings = _settings()
    engine = ScoringEngine(_seeded_store(), ResultCache(TTLCache()), settings, clock=lambda: NOW)
    try:
        with TestClient(create_app(settings=settings, engine=engine)) as client:
            first = [client.post("/api/v1/groups/10/leaderboard/weekly/rebuild").status_code for _ in range(2)]
            assert first == [200, 200]

            limited = client.post("/api/v1/groups/10/leaderboard/WEEKLY/rebuild")
            assert limited.status_code == 429
            detail = limited.json()["detail"]
            assert detail["code"] == "RATE_LIMITED"
            assert detail["details"]["group_id"] == 10
            assert detail["details"]["period"] == "WEEKLY"
            assert "Retry-After" in limited.headers

            # other boards keep their own budget
            assert client.post("/api/v1/groups/10/leaderboard/monthly/rebuild").status_code == 200
            assert client.post("/api/v1/groups/11/leaderboard/weekly/rebuild").status_code == 200
    finally:
        _purge_api_modules()


def test_rebuild_partition_key_ignores_period_case(monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    _purge_api_modules()
    from api.ratelimit import rebuild_partition_key

    class _Req:
        def __init__(self, **params):
            self.path_params = params

    assert rebuild_partition_key(_Req(group_id=10, period="weekly")) == "rebuild:10:WEEKLY"
    assert rebuild_partition_key(_Req(group_id=10, period="WEEKLY")) == "rebuild:10:WEEKLY"
    assert rebuild_partition_key(_Req(group_id=11, period="weekly")) != rebuild_partition_key(
        _Req(group_id=10, period="weekly")
    )
