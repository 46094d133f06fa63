"""Scheduler module for the periodic job-health sweep."""
from __future__ import annotations

from .jobs import run_job_monitor_job
from .runner import run_scheduler_blocking, start_scheduler, stop_scheduler

__all__ = [
    "run_job_monitor_job",
    "start_scheduler",
    "stop_scheduler",
    "run_scheduler_blocking",
]
