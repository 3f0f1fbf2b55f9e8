"""Database engine and session management for monodeploy.

This module provides SQLAlchemy engine creation, session factory,
and base model class for the build cache tables.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from monodeploy.config import get_settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def sqlite_file(db_url: str) -> Path | None:
    """Return the database file of a file-backed SQLite URL.

    Returns:
        Path of the database file, or None for in-memory and non-SQLite URLs.
    """
    if not db_url.startswith("sqlite"):
        return None
    database = make_url(db_url).database
    if not database or database == ":memory:":
        return None
    return Path(database)


def get_engine(db_url: str | None = None, create_dirs: bool = True) -> Any:
    """Create and return a SQLAlchemy engine.

    Args:
        db_url: Database URL. If not provided, uses settings default.
        create_dirs: Create the parent directory of a SQLite database file.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        settings = get_settings()
        db_url = settings.db_url

    # SQLite-specific connect args: builds write from worker threads
    connect_args: dict[str, Any] = {}
    engine_kwargs: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        database = sqlite_file(db_url)
        if database is None:
            # One shared connection, otherwise each thread sees its own database
            engine_kwargs["poolclass"] = StaticPool
        elif create_dirs:
            database.parent.mkdir(parents=True, exist_ok=True)

    return create_engine(
        db_url,
        connect_args=connect_args,
        echo=False,
        **engine_kwargs,
    )


def get_session_factory(engine: Any | None = None) -> sessionmaker[Session]:
    """Create and return a session factory.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.

    Returns:
        Session factory (sessionmaker).
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Args:
        session_factory: Optional session factory. Creates one if not provided.

    Yields:
        SQLAlchemy Session instance.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any | None = None) -> None:
    """Create all tables defined by ORM models.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.
    """
    # Import models so they are registered on Base.metadata
    from monodeploy.builds import models as builds_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


def has_cache_tables(engine: Any) -> bool:
    """Return True if the cache tables already exist in the database.

    Args:
        engine: SQLAlchemy engine.
    """
    from monodeploy.builds.models import CacheEntry

    return inspect(engine).has_table(CacheEntry.__tablename__)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "has_cache_tables",
    "sqlite_file",
]
