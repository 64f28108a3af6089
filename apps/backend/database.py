"""Подключение к БД: Postgres в проде, SQLite в тестах."""
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from apps.backend.config import get_settings


def get_database_url() -> str:
    s = get_settings()
    if s.database_url:
        return s.database_url
    return (
        f"postgresql://{s.postgres_user}:{s.postgres_password}@"
        f"{s.postgres_host}:{s.postgres_port}/{s.postgres_db}"
    )


@lru_cache
def get_engine():
    # one pool per process; API requests, chat workers and the deploy runner share it
    return create_engine(get_database_url(), pool_pre_ping=True)


def get_test_engine():
    """In-memory SQLite, one shared connection: sequential tests only."""
    return create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def get_file_test_engine(path: str):
    """SQLite on disk: separate connection per thread, for concurrency tests."""
    return create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )


class Base(DeclarativeBase):
    pass


# JSONB columns stay JSONB on Postgres; SQLite stores them as JSON text
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(_element, _compiler, **_kw):
    return "JSON"


def get_session_factory(engine=None):
    eng = engine or get_engine()
    return sessionmaker(autocommit=False, autoflush=False, bind=eng)
