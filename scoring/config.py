"""Engine configuration with environment-specific profiles.

Supports dev, staging, test and production environments via APP_ENV.
All values can be overridden by environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Settings:
    """Immutable engine settings resolved from environment."""

    database_url: str
    app_env: str = "dev"
    log_level: str = "INFO"

    # Result cache
    redis_url: str = "redis://localhost:6379/0"
    cache_prefix: str = "gse"
    cache_backend: str = "redis"
    leaderboard_cache_ttl_seconds: int = 300

    # Leaderboard
    leaderboard_default_limit: int = 50
    leaderboard_max_limit: int = 200
    rebuild_max_workers: int = 8
    member_timeout_seconds: float = 10.0
    rank_barrier_attempts: int = 3
    rank_barrier_backoff_seconds: float = 0.2

    # Recommendations
    recommendation_candidate_cap: int = 50
    recommendation_default_limit: int = 10
    activity_lookback_days: int = 30

    # API
    rate_limit_enabled: bool = True
    rate_limit_storage_uri: str = "memory://"
    rebuild_rate_limit: str = "10/minute"
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def is_dev(self) -> bool:
        return self.app_env == "dev"

    @property
    def is_test(self) -> bool:
        return self.app_env == "test"


# -- Environment profiles --

_ENV_PROFILES: dict[str, dict] = {
    "dev": {
        "log_level": "DEBUG",
        "leaderboard_cache_ttl_seconds": 60,
    },
    "staging": {
        "log_level": "INFO",
        "leaderboard_cache_ttl_seconds": 300,
    },
    "test": {
        "log_level": "WARNING",
        "cache_backend": "memory",
        "rank_barrier_backoff_seconds": 0.0,
    },
    "production": {
        "log_level": "WARNING",
        "leaderboard_cache_ttl_seconds": 600,
        "rebuild_max_workers": 16,
    },
}


def get_database_url() -> str:
    """Resolve database URL from env var or local default."""
    env_url = os.getenv("DATABASE_URL")
    if env_url:
        return env_url
    return "postgresql+psycopg2://localhost:5432/groupscore"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return default
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_settings() -> Settings:
    """Build Settings by merging environment profile with env-var overrides."""
    app_env = os.getenv("APP_ENV", "dev")
    profile = _ENV_PROFILES.get(app_env, _ENV_PROFILES["dev"])

    return Settings(
        database_url=get_database_url(),
        app_env=app_env,
        log_level=os.getenv("LOG_LEVEL", profile.get("log_level", "INFO")),
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        cache_prefix=os.getenv("CACHE_PREFIX", "gse"),
        cache_backend=os.getenv("CACHE_BACKEND", profile.get("cache_backend", "redis")),
        leaderboard_cache_ttl_seconds=int(
            os.getenv("LEADERBOARD_CACHE_TTL_SECONDS", str(profile.get("leaderboard_cache_ttl_seconds", 300)))
        ),
        leaderboard_default_limit=int(os.getenv("LEADERBOARD_DEFAULT_LIMIT", "50")),
        leaderboard_max_limit=int(os.getenv("LEADERBOARD_MAX_LIMIT", "200")),
        rebuild_max_workers=int(os.getenv("REBUILD_MAX_WORKERS", str(profile.get("rebuild_max_workers", 8)))),
        member_timeout_seconds=float(os.getenv("MEMBER_TIMEOUT_SECONDS", "10.0")),
        rank_barrier_attempts=int(os.getenv("RANK_BARRIER_ATTEMPTS", "3")),
        rank_barrier_backoff_seconds=float(
            os.getenv("RANK_BARRIER_BACKOFF_SECONDS", str(profile.get("rank_barrier_backoff_seconds", 0.2)))
        ),
        recommendation_candidate_cap=int(os.getenv("RECOMMENDATION_CANDIDATE_CAP", "50")),
        recommendation_default_limit=int(os.getenv("RECOMMENDATION_DEFAULT_LIMIT", "10")),
        activity_lookback_days=int(os.getenv("ACTIVITY_LOOKBACK_DAYS", "30")),
        rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
        rate_limit_storage_uri=os.getenv("RATE_LIMIT_STORAGE_URI", "memory://"),
        rebuild_rate_limit=os.getenv("REBUILD_RATE_LIMIT", "10/minute"),
        cors_origins=_env_list("CORS_ORIGINS", ["http://localhost:3000"]),
    )
