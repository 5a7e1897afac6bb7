from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from scoring.config import get_database_url
from scoring.models import Base


@lru_cache(maxsize=4)
def get_engine(url: str | None = None) -> Engine:
    url = url or get_database_url()
    if url.startswith("sqlite"):
        # Worker threads share the engine during rebuilds.
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


@lru_cache(maxsize=4)
def get_session_factory(url: str | None = None) -> sessionmaker[Session]:
    return sessionmaker(bind=get_engine(url), autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(url: str | None = None) -> Iterator[Session]:
    session = get_session_factory(url)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_schema(url: str | None = None) -> None:
    Base.metadata.create_all(bind=get_engine(url))


def reset_engines() -> None:
    """Drop cached engines, e.g. after DATABASE_URL changes in tests."""
    get_session_factory.cache_clear()
    get_engine.cache_clear()
