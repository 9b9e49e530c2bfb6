"""
Guardian — Database Session

SQLAlchemy engine, session factory, and declarative base.
Uses psycopg2 (sync) with the Postgres credentials from config, or any
URL given through GUARDIAN_DB_URL (SQLite for local runs and tests).
"""

from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from guardian.config import get_settings

settings = get_settings()


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///") or ":memory:" in url


def make_engine(url: str) -> Engine:
    """
    Build an engine.

    In-memory SQLite shares one connection across threads (the database
    lives in that connection). File SQLite gets a pool of real connections
    so concurrent writers contend on the file lock as they would on
    Postgres row locks.
    """
    if _is_memory_sqlite(url):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 15},
        )
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


engine = make_engine(settings.database_url)

SessionLocal: sessionmaker[Session] = sessionmaker(
    bind=engine,
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""
    pass
