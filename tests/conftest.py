from __future__ import annotations

from datetime import datetime

import pytest

from scoring.config import Settings
from tests.fakes import InMemoryStore

# Wednesday; its ISO week runs Mon 2026-03-09 .. Sun 2026-03-15.
NOW = datetime(2026, 3, 11, 12, 0, 0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        app_env="test",
        cache_backend="memory",
        rebuild_max_workers=4,
        member_timeout_seconds=2.0,
        rank_barrier_attempts=3,
        rank_barrier_backoff_seconds=0.0,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()
