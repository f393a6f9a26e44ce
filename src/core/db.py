"""Database connection and session management."""
from __future__ import annotations

from contextlib import contextmanager
from functools import partial
from typing import Generator, List, Optional

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import get_settings
from .logging_config import get_logger

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

# Tables the engine cannot run without
REQUIRED_TABLES = ["funnel", "conversation", "funnel_interaction", "message"]

# Check if using SQLite (doesn't support connection pooling)
_is_sqlite = SETTINGS.database_url.startswith("sqlite")


def _build_engine():
    if _is_sqlite:
        from sqlalchemy.pool import NullPool, StaticPool

        in_memory = ":memory:" in SETTINGS.database_url
        sqlite_engine = create_engine(
            SETTINGS.database_url,
            connect_args={"check_same_thread": False},  # pollers run on scheduler threads
            poolclass=StaticPool if in_memory else NullPool,
        )

        @event.listens_for(sqlite_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        return sqlite_engine

    return create_engine(
        SETTINGS.database_url,
        pool_size=SETTINGS.db_pool_size,
        max_overflow=SETTINGS.db_max_overflow,
        pool_timeout=SETTINGS.db_pool_timeout,
        pool_pre_ping=True,
    )


engine = _build_engine()

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Session for CLI commands and scripts; commits on success, rolls back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _missing_tables() -> List[str]:
    existing_tables = set(inspect(engine).get_table_names())
    return [t for t in REQUIRED_TABLES if t not in existing_tables]


def init_db() -> dict:
    """
    Create any missing tables.

    Returns:
        Dict with initialization results.
    """
    # Registers the tables on Base.metadata
    from . import models  # noqa: F401

    existing_tables = set(inspect(engine).get_table_names())
    Base.metadata.create_all(bind=engine)
    created = sorted(set(inspect(engine).get_table_names()) - existing_tables)

    if created:
        LOGGER.info(f"Created tables: {created}")

    result = {
        "status": "success",
        "tables_created": created,
        "tables_existing": sorted(existing_tables),
        "warnings": [],
    }
    missing = _missing_tables()
    if missing:
        result["status"] = "warning"
        result["warnings"].append(f"Missing required tables: {missing}")
    return result


def validate_database() -> dict:
    """Check connectivity and that every conversation table exists. Never raises."""
    result = {
        "status": "ok",
        "database_url": SETTINGS.database_url,
        "tables_missing": [],
        "errors": [],
    }

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        result["tables_missing"] = _missing_tables()
        if result["tables_missing"]:
            result["status"] = "missing_tables"
            result["errors"].append(f"Missing required tables: {result['tables_missing']}")
    except Exception as e:
        LOGGER.error(f"Database validation failed: {e}")
        result["status"] = "error"
        result["errors"].append(str(e))

    return result


class SessionContextManager:
    """One unit of work for a poller tick or sweep: commit on clean exit, roll back otherwise."""

    def __init__(self, factory: Optional[sessionmaker] = None):
        self._factory = factory or SessionLocal
        self.session = None

    def __enter__(self):
        self.session = self._factory()
        return self.session

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            try:
                if exc_type is None:
                    self.session.commit()
                else:
                    self.session.rollback()
            except Exception:
                self.session.rollback()
                raise
            finally:
                self.session.close()
        return False


def get_session_factory(bind=None):
    """
    Return a session factory for pollers and scheduled jobs.

    Args:
        bind: Optional engine or connection to bind sessions to instead of
            the module engine (tests pass their own in-memory engine).

    Usage:
        session_factory = get_session_factory()
        with session_factory() as session:
            # do work, committed on success
            ...
    """
    if bind is None:
        return SessionContextManager
    factory = sessionmaker(autocommit=False, autoflush=False, bind=bind)
    return partial(SessionContextManager, factory)
