"""Database connection and session management."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Generator, List

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from .config import get_settings
from .logging_config import get_logger

LOGGER = get_logger(__name__)
SETTINGS = get_settings()

# Tables the pipeline cannot run without
REQUIRED_TABLES = [
    "upload_job",
    "upload_staging",
    "property",
    "violation",
    "geocoding_job",
]

_is_sqlite = SETTINGS.database_url.startswith("sqlite")
_is_memory = _is_sqlite and ":memory:" in SETTINGS.database_url


def _build_engine():
    if _is_memory:
        # One shared connection, otherwise every checkout sees an empty database
        return create_engine(
            SETTINGS.database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if _is_sqlite:
        sqlite_engine = create_engine(
            SETTINGS.database_url,
            connect_args={"check_same_thread": False},
            poolclass=NullPool,
        )

        @event.listens_for(sqlite_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.execute("PRAGMA foreign_keys=ON")
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
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back and re-raises on error.

    Yields:
        SQLAlchemy Session object.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db() -> Dict[str, Any]:
    """
    Create any tables that do not exist yet.

    Existing tables are never altered; schema changes go through Alembic.

    Returns:
        Dict with initialization results.
    """
    from . import models  # noqa: F401

    existing_tables = set(inspect(engine).get_table_names())
    Base.metadata.create_all(bind=engine)
    final_tables = set(inspect(engine).get_table_names())

    result: Dict[str, Any] = {
        "status": "success",
        "tables_created": sorted(final_tables - existing_tables),
        "tables_existing": sorted(existing_tables),
        "warnings": [],
    }
    missing_required = [t for t in REQUIRED_TABLES if t not in final_tables]
    if missing_required:
        result["warnings"].append(f"Missing required tables: {missing_required}")
        result["status"] = "warning"

    if result["tables_created"]:
        LOGGER.info(f"Created tables: {result['tables_created']}")
    return result


def missing_tables() -> List[str]:
    """Return required tables that are absent from the connected database."""
    existing = set(inspect(engine).get_table_names())
    return [t for t in REQUIRED_TABLES if t not in existing]


def validate_database() -> Dict[str, Any]:
    """
    Validate database connection and required tables.

    Call this at application startup to ensure the database is ready.

    Returns:
        Dict with validation results.
    """
    result: Dict[str, Any] = {
        "status": "ok",
        "tables_missing": [],
        "errors": [],
    }

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        result["tables_missing"] = missing_tables()
        if result["tables_missing"]:
            result["status"] = "missing_tables"
            result["errors"].append(f"Missing required tables: {result['tables_missing']}")
    except Exception as e:
        LOGGER.error(f"Database validation failed: {e}")
        result["status"] = "error"
        result["errors"].append(str(e))

    return result


__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "get_session",
    "init_db",
    "missing_tables",
    "validate_database",
    "REQUIRED_TABLES",
]
