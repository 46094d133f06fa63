"""Scheduled job definitions."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.db import get_session
from core.logging_config import get_logger
from services.job_monitor import run_job_monitor
from services.locking import get_scheduler_lock_service
from services.task_dispatch import TaskDispatcher

LOGGER = get_logger(__name__)

JOB_MONITOR_LOCK = "job_monitor"


def run_job_monitor_job(
    dispatcher: Optional[TaskDispatcher] = None,
    lock_seconds: int = 600,
) -> Dict[str, Any]:
    """
    Run one job-health sweep under the scheduler lock.

    Args:
        dispatcher: Where recovered uploads are re-submitted.
        lock_seconds: Lease length; an instance that dies mid-sweep frees
            the lock after this long.

    Returns:
        Job summary; ``skipped`` is True when another instance holds the lock.
    """
    job_id = f"job_monitor_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"
    LOGGER.debug("[%s] Starting job monitor sweep", job_id)

    try:
        with get_session() as session:
            lock_service = get_scheduler_lock_service(session)
            with lock_service.scheduler_lock(JOB_MONITOR_LOCK, lock_seconds) as acquired:
                if not acquired:
                    LOGGER.info("[%s] Another instance holds the job monitor lock", job_id)
                    return {
                        "job_id": job_id,
                        "job_type": "job_monitor",
                        "success": True,
                        "skipped": True,
                    }
                result = run_job_monitor(session, dispatcher=dispatcher)

        LOGGER.info("[%s] Job monitor complete: %s", job_id, result)
        return {
            "job_id": job_id,
            "job_type": "job_monitor",
            "success": not result["errors"],
            "skipped": False,
            "result": result,
        }
    except Exception as e:
        LOGGER.exception("[%s] Job monitor failed: %s", job_id, e)
        return {
            "job_id": job_id,
            "job_type": "job_monitor",
            "success": False,
            "skipped": False,
            "error": str(e),
        }


__all__ = ["JOB_MONITOR_LOCK", "run_job_monitor_job"]
