"""Background services for the violation lead pipeline.

This module provides:
- Geocoding providers (Census, Nominatim, Google) behind a fallback chain
- The self-continuing batch geocoding job
- The job-health monitor
- Rule-based property insights
- Skip trace lookups
- Task dispatch (inline, thread pool, HTTP)

Vendor clients share:
- Feature flag checks (ENABLE_* in .env)
- Retry logic (tenacity, exponential backoff)
- Structured logging of every external call
"""
from __future__ import annotations

# Retry utilities
from .retry import (
    with_retry,
    raise_for_vendor_status,
)

# Task dispatch
from .task_dispatch import (
    PROCESS_UPLOAD,
    GEOCODE_BATCH,
    START_GEOCODING,
    GENERATE_INSIGHTS,
    JOB_MONITOR,
    TaskDispatcher,
    InlineDispatcher,
    ThreadDispatcher,
    HttpDispatcher,
    run_task,
    get_dispatcher,
    set_dispatcher,
)

# Geocoding
from .geocoders import (
    AddressQuery,
    GeocodeOutcome,
    GeocoderChain,
    build_geocoder_chain,
)
from .geocoding_job import (
    GeocodeBatchResult,
    GeocodingJobService,
)

# Job health
from .job_monitor import (
    JobMonitor,
    MonitorResult,
    run_job_monitor,
)

# Locking
from .locking import (
    SchedulerLockService,
    get_scheduler_lock_service,
)

# Insights
from .insights import (
    classify_violation,
    generate_insights,
)

# Skip Trace
from .skip_trace import (
    SkipTraceService,
    SkipTraceResult,
    get_skip_trace_service,
)

__all__ = [
    # Retry utilities
    "with_retry",
    "raise_for_vendor_status",
    # Task dispatch
    "PROCESS_UPLOAD",
    "GEOCODE_BATCH",
    "START_GEOCODING",
    "GENERATE_INSIGHTS",
    "JOB_MONITOR",
    "TaskDispatcher",
    "InlineDispatcher",
    "ThreadDispatcher",
    "HttpDispatcher",
    "run_task",
    "get_dispatcher",
    "set_dispatcher",
    # Geocoding
    "AddressQuery",
    "GeocodeOutcome",
    "GeocoderChain",
    "build_geocoder_chain",
    "GeocodeBatchResult",
    "GeocodingJobService",
    # Job health
    "JobMonitor",
    "MonitorResult",
    "run_job_monitor",
    # Locking
    "SchedulerLockService",
    "get_scheduler_lock_service",
    # Insights
    "classify_violation",
    "generate_insights",
    # Skip Trace
    "SkipTraceService",
    "SkipTraceResult",
    "get_skip_trace_service",
]
