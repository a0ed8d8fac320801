"""Database session configuration."""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from gatehouse.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import gatehouse.models  # noqa: E402,F401


@lru_cache
def get_engine() -> Engine:
    """Return the process-wide engine for the configured database.

    Raises:
        ConfigurationError: If no database is configured outside development.
    """
    url = settings.effective_database_url
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(
        url,
        pool_pre_ping=True,
        echo=settings.sql_debug,
        connect_args=connect_args,
    )


@lru_cache
def get_sessionmaker() -> sessionmaker[Session]:
    """Return the session factory bound to :func:`get_engine`."""
    return sessionmaker(autocommit=False, autoflush=False, bind=get_engine())


def create_tables() -> None:
    """Create all database tables."""
    Base.metadata.create_all(bind=get_engine())
