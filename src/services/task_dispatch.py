"""Background task dispatch.

Every long-running step of the pipeline is a named task taking a small JSON
payload. A task never calls its successor directly; it submits it and
returns, so a chain of continuations is a queue drain rather than a call
stack. Submission is fire-and-forget: a failing task is logged and the job
row it was working on is left for the job monitor to recover.

Dispatchers:
- InlineDispatcher: drains a FIFO queue in the calling thread (CLI, tests).
- ThreadDispatcher: bounded thread pool inside the API process.
- HttpDispatcher: POSTs to this service's own /tasks endpoints, for
  serverless deployments where each invocation has a time limit.
"""
from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from core.config import get_settings
from core.db import get_session
from core.exceptions import TaskDispatchError
from core.logging_config import get_logger

LOGGER = get_logger(__name__)

PROCESS_UPLOAD = "process_upload"
GEOCODE_BATCH = "geocode_batch"
START_GEOCODING = "start_geocoding"
GENERATE_INSIGHTS = "generate_insights"
JOB_MONITOR = "job_monitor"

TASK_TYPES = (PROCESS_UPLOAD, GEOCODE_BATCH, START_GEOCODING, GENERATE_INSIGHTS, JOB_MONITOR)

# RFC 7240 preference asking the task route to answer before running the task
RESPOND_ASYNC = "respond-async"

SessionFactory = Callable[[], AbstractContextManager]
TaskHandler = Callable[[Session, Dict[str, Any], "TaskDispatcher"], Dict[str, Any]]


@dataclass
class Task:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


def _handlers() -> Dict[str, TaskHandler]:
    # Imported lazily: every handler module submits tasks through this one
    from ingestion.pipeline import handle_process_upload
    from services.geocoding_job import handle_geocode_batch, handle_start_geocoding
    from services.insights import handle_generate_insights
    from services.job_monitor import handle_job_monitor

    return {
        PROCESS_UPLOAD: handle_process_upload,
        GEOCODE_BATCH: handle_geocode_batch,
        START_GEOCODING: handle_start_geocoding,
        GENERATE_INSIGHTS: handle_generate_insights,
        JOB_MONITOR: handle_job_monitor,
    }


def run_task(
    session: Session,
    name: str,
    payload: Optional[Dict[str, Any]],
    dispatcher: "TaskDispatcher",
) -> Dict[str, Any]:
    """
    Run one task synchronously in ``session``.

    Raises:
        TaskDispatchError: If ``name`` is not a known task.
    """
    handler = _handlers().get(name)
    if handler is None:
        raise TaskDispatchError(f"Unknown task type: {name}")
    return handler(session, dict(payload or {}), dispatcher)


class TaskDispatcher:
    """Base class; subclasses decide where a submitted task runs."""

    def submit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError

    def shutdown(self, wait: bool = True) -> None:
        pass


class InlineDispatcher(TaskDispatcher):
    """
    Run tasks in the calling thread.

    A task submitted while another is running is queued and started after
    the current one returns, so self-continuing work never recurses.

    Args:
        session_factory: Callable returning a session context manager.
        max_tasks: Optional cap on tasks executed per drain.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        max_tasks: Optional[int] = None,
    ):
        self.session_factory = session_factory or get_session
        self.max_tasks = max_tasks
        self.queue: Deque[Task] = deque()
        self.results: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: List[Tuple[str, str]] = []
        self._draining = False

    def submit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self.queue.append(Task(name=name, payload=dict(payload or {})))
        if not self._draining:
            self.drain()

    def drain(self) -> int:
        """Run queued tasks until the queue is empty. Returns tasks executed."""
        self._draining = True
        executed = 0
        try:
            while self.queue:
                if self.max_tasks is not None and executed >= self.max_tasks:
                    LOGGER.warning(
                        f"Inline task limit {self.max_tasks} reached; "
                        f"{len(self.queue)} task(s) left queued"
                    )
                    break
                self._execute(self.queue.popleft())
                executed += 1
        finally:
            self._draining = False
        return executed

    def _execute(self, task: Task) -> None:
        try:
            with self.session_factory() as session:
                result = run_task(session, task.name, task.payload, self)
            self.results.append((task.name, result))
        except Exception as e:
            LOGGER.exception(f"Task {task.name} {task.payload} failed: {e}")
            self.failures.append((task.name, str(e)))


class ThreadDispatcher(TaskDispatcher):
    """Run tasks on a bounded thread pool, one database session per task."""

    def __init__(
        self,
        max_workers: Optional[int] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.session_factory = session_factory or get_session
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or get_settings().task_worker_threads,
            thread_name_prefix="task",
        )

    def submit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        task = Task(name=name, payload=dict(payload or {}))
        try:
            self._executor.submit(self._execute, task)
        except RuntimeError as e:
            # Executor already shut down
            LOGGER.error(f"Could not submit task {name}: {e}")

    def _execute(self, task: Task) -> None:
        try:
            with self.session_factory() as session:
                run_task(session, task.name, task.payload, self)
        except Exception as e:
            LOGGER.exception(f"Task {task.name} {task.payload} failed: {e}")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class HttpDispatcher(TaskDispatcher):
    """
    Submit tasks by POSTing to ``{base_url}/tasks/{task-name}``.

    Requests carry ``Prefer: respond-async`` so the task route answers 202
    before running the task. A timeout still counts as dispatched.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.base_url = (base_url or settings.task_base_url).rstrip("/")
        self.timeout = timeout or settings.task_http_timeout_seconds
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def url_for(self, name: str) -> str:
        return f"{self.base_url}/tasks/{name.replace('_', '-')}"

    def submit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if name not in TASK_TYPES:
            LOGGER.error(f"Refusing to dispatch unknown task {name}")
            return
        url = self.url_for(name)
        try:
            response = self.client.post(url, json=payload or {}, headers={"Prefer": RESPOND_ASYNC})
            response.raise_for_status()
            LOGGER.debug(f"Dispatched {name} to {url}")
        except httpx.TimeoutException:
            LOGGER.info(f"Dispatched {name} to {url} (not waiting for completion)")
        except httpx.HTTPError as e:
            LOGGER.error(f"Failed to dispatch {name} to {url}: {e}")

    def shutdown(self, wait: bool = True) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


_dispatcher: Optional[TaskDispatcher] = None
_dispatcher_lock = threading.Lock()


def build_dispatcher(mode: Optional[str] = None) -> TaskDispatcher:
    """Create a dispatcher for ``mode`` (defaults to TASK_DISPATCH_MODE)."""
    mode = mode or get_settings().task_dispatch_mode
    if mode == "inline":
        return InlineDispatcher()
    if mode == "http":
        return HttpDispatcher()
    if mode == "thread":
        return ThreadDispatcher()
    raise TaskDispatchError(f"Unknown task dispatch mode: {mode}")


def get_dispatcher() -> TaskDispatcher:
    """Get the process-wide dispatcher."""
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is None:
            _dispatcher = build_dispatcher()
        return _dispatcher


def set_dispatcher(dispatcher: Optional[TaskDispatcher]) -> None:
    """Replace the process-wide dispatcher (CLI and tests)."""
    global _dispatcher
    with _dispatcher_lock:
        if _dispatcher is not None and _dispatcher is not dispatcher:
            _dispatcher.shutdown(wait=False)
        _dispatcher = dispatcher


__all__ = [
    "RESPOND_ASYNC",
    "PROCESS_UPLOAD",
    "GEOCODE_BATCH",
    "START_GEOCODING",
    "GENERATE_INSIGHTS",
    "JOB_MONITOR",
    "TASK_TYPES",
    "Task",
    "TaskDispatcher",
    "InlineDispatcher",
    "ThreadDispatcher",
    "HttpDispatcher",
    "run_task",
    "build_dispatcher",
    "get_dispatcher",
    "set_dispatcher",
]
