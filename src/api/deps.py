"""Shared dependencies for FastAPI routes."""
from __future__ import annotations

from typing import Generator

from sqlalchemy.orm import Session

from core.db import SessionLocal
from ingestion.storage import UploadStorage, get_upload_storage
from services.task_dispatch import TaskDispatcher, get_dispatcher


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency that provides a database session.

    Yields:
        SQLAlchemy Session instance.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_readonly_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency that provides a read-only database session.

    Yields:
        SQLAlchemy Session instance (read-only mode).
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


def get_task_dispatcher() -> TaskDispatcher:
    """Dispatcher that background tasks are submitted to."""
    return get_dispatcher()


def get_storage() -> UploadStorage:
    return get_upload_storage()


__all__ = ["get_db", "get_readonly_db", "get_task_dispatcher", "get_storage"]
