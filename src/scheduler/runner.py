"""Job scheduler for the periodic job-health sweep."""
from __future__ import annotations

import signal
import sys
import time
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import get_settings
from core.logging_config import get_logger, setup_logging
from scheduler.jobs import run_job_monitor_job

LOGGER = get_logger(__name__)

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None


def run_scheduled_monitor() -> None:
    """Run the job monitor from the scheduler thread."""
    result = run_job_monitor_job(lock_seconds=get_settings().monitor_interval_seconds)
    if not result.get("success"):
        LOGGER.error("Scheduled job monitor reported problems: %s", result)


def start_scheduler() -> BackgroundScheduler:
    """
    Start the background scheduler with the monitor job.

    Returns:
        The running BackgroundScheduler instance.
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        LOGGER.warning("Scheduler is already running")
        return _scheduler

    settings = get_settings()
    _scheduler = BackgroundScheduler()
    _scheduler.add_job(
        run_scheduled_monitor,
        IntervalTrigger(seconds=settings.monitor_interval_seconds),
        id="job_monitor",
        replace_existing=True,
        name="Job Health Monitor",
        max_instances=1,
        coalesce=True,
    )

    _scheduler.start()
    LOGGER.info(
        "Scheduler started: job monitor every %ds", settings.monitor_interval_seconds
    )
    return _scheduler


def stop_scheduler() -> None:
    """Stop the background scheduler gracefully."""
    global _scheduler

    if _scheduler is not None:
        LOGGER.info("Stopping scheduler...")
        _scheduler.shutdown(wait=True)
        _scheduler = None
        LOGGER.info("Scheduler stopped.")
    else:
        LOGGER.warning("Scheduler is not running")


def _signal_handler(signum: int, frame: object) -> None:
    """Handle shutdown signals."""
    LOGGER.info("Received signal %d, shutting down...", signum)
    stop_scheduler()
    sys.exit(0)


def run_scheduler_blocking() -> None:
    """
    Start the scheduler and block until interrupted.

    This is the main entry point for running the scheduler as a standalone process.
    """
    settings = get_settings()
    setup_logging(level=settings.log_level, json_format=settings.log_format == "json")

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    LOGGER.info("Starting job monitor scheduler (environment: %s)", settings.environment)
    start_scheduler()

    try:
        # Keep main thread alive
        while True:
            time.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler()
        LOGGER.info("Scheduler shutdown complete.")


if __name__ == "__main__":
    run_scheduler_blocking()
