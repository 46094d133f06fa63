"""Scheduler lease locks.

Prevents two scheduler processes from running the job-health sweep at the
same time against the same database.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import timedelta
from typing import Generator

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.logging_config import get_logger
from core.models import SchedulerLock
from core.utils import ensure_aware, generate_unique_key, utcnow

LOGGER = get_logger(__name__)


class SchedulerLockService:
    """
    Lease-based lock stored in the ``scheduler_lock`` table.

    An expired lease may be taken over by any instance.
    """

    DEFAULT_LOCK_DURATION = 600

    def __init__(self, session: Session):
        self.session = session
        self.instance_id = generate_unique_key()

    def acquire_lock(
        self,
        lock_name: str,
        duration_seconds: int = DEFAULT_LOCK_DURATION,
    ) -> bool:
        """
        Attempt to acquire a scheduler lock.

        Args:
            lock_name: Name of the lock (e.g., "job_monitor").
            duration_seconds: How long the lease is valid.

        Returns:
            True if lock was acquired, False if another instance holds it.
        """
        now = utcnow()
        expires_at = now + timedelta(seconds=duration_seconds)

        existing = self.session.query(SchedulerLock).filter(
            SchedulerLock.lock_name == lock_name
        ).first()

        if existing:
            if now < ensure_aware(existing.expires_at):
                if existing.locked_by == self.instance_id:
                    existing.expires_at = expires_at
                    self.session.commit()
                    return True
                LOGGER.info(f"Lock {lock_name} held by {existing.locked_by} until {existing.expires_at}")
                return False
            existing.locked_by = self.instance_id
            existing.locked_at = now
            existing.expires_at = expires_at
            self.session.commit()
            LOGGER.info(f"Took over expired lock {lock_name}")
            return True

        try:
            self.session.add(
                SchedulerLock(
                    lock_name=lock_name,
                    locked_by=self.instance_id,
                    locked_at=now,
                    expires_at=expires_at,
                )
            )
            self.session.commit()
            LOGGER.debug(f"Acquired lock {lock_name}")
            return True
        except IntegrityError:
            self.session.rollback()
            return False

    def release_lock(self, lock_name: str) -> None:
        """Release a lock held by this instance."""
        lock = self.session.query(SchedulerLock).filter(
            and_(
                SchedulerLock.lock_name == lock_name,
                SchedulerLock.locked_by == self.instance_id,
            )
        ).first()

        if lock:
            self.session.delete(lock)
            self.session.commit()
            LOGGER.debug(f"Released lock {lock_name}")

    @contextmanager
    def scheduler_lock(
        self,
        lock_name: str,
        duration_seconds: int = DEFAULT_LOCK_DURATION,
    ) -> Generator[bool, None, None]:
        """
        Context manager for scheduler locking.

        Usage:
            with lock_service.scheduler_lock("job_monitor") as acquired:
                if acquired:
                    run_sweep()

        Yields:
            True if lock was acquired, False otherwise.
        """
        acquired = self.acquire_lock(lock_name, duration_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                self.release_lock(lock_name)


def get_scheduler_lock_service(session: Session) -> SchedulerLockService:
    """Get a SchedulerLockService instance."""
    return SchedulerLockService(session)


__all__ = [
    "SchedulerLockService",
    "get_scheduler_lock_service",
]
