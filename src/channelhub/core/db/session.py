"""Database session helpers built on SQLModel."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from channelhub.core.config import AppSettings

EngineCacheKey = tuple[str, bool]
_ENGINE_CACHE: dict[EngineCacheKey, Engine] = {}


def create_engine_from_settings(settings: AppSettings, *, echo: bool = False) -> Engine:
    """Create (or reuse) a SQLModel engine based on ``AppSettings``."""

    return create_engine_from_dsn(settings.postgres.dsn, echo=echo)


def create_engine_from_dsn(dsn: str, *, echo: bool = False) -> Engine:
    cache_key: EngineCacheKey = (dsn, echo)
    if cache_key not in _ENGINE_CACHE:
        if dsn.startswith("sqlite"):
            engine = create_engine(
                dsn,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_engine(dsn, echo=echo, pool_pre_ping=True)
        _ENGINE_CACHE[cache_key] = engine
    return _ENGINE_CACHE[cache_key]


def init_db(engine: Engine) -> None:
    """Create all tables for the metadata on the provided engine."""

    from . import models  # noqa: F401  Ensures models are imported before metadata usage.

    SQLModel.metadata.create_all(engine)


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    with Session(engine) as session:
        try:
            yield session
        except Exception:
            session.rollback()
            raise
