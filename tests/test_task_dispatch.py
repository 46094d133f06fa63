"""Tests for background task dispatch."""
from __future__ import annotations

from contextlib import nullcontext
from unittest.mock import MagicMock, patch

import httpx
import pytest

from core.exceptions import TaskDispatchError
from services import task_dispatch
from services.task_dispatch import (
    GEOCODE_BATCH,
    JOB_MONITOR,
    PROCESS_UPLOAD,
    HttpDispatcher,
    InlineDispatcher,
    ThreadDispatcher,
    build_dispatcher,
    run_task,
)


def fake_handlers(calls):
    def chain(session, payload, dispatcher):
        calls.append(("chain", payload["n"]))
        if payload["n"] > 0:
            dispatcher.submit("chain", {"n": payload["n"] - 1})
            dispatcher.submit("leaf", {"n": payload["n"]})
        return {"n": payload["n"]}

    def leaf(session, payload, dispatcher):
        calls.append(("leaf", payload["n"]))
        return {}

    def broken(session, payload, dispatcher):
        raise RuntimeError("handler failed")

    return {"chain": chain, "leaf": leaf, "broken": broken}


class TestInlineDispatcher:

    def test_continuations_run_in_fifo_order_without_recursion(self, db_session, monkeypatch):
        calls = []
        monkeypatch.setattr(task_dispatch, "_handlers", lambda: fake_handlers(calls))
        dispatcher = InlineDispatcher(session_factory=lambda: nullcontext(db_session))

        dispatcher.submit("chain", {"n": 2})

        assert calls == [("chain", 2), ("chain", 1), ("leaf", 2), ("chain", 0), ("leaf", 1)]
        assert not dispatcher.queue
        assert len(dispatcher.results) == 5

    def test_failure_is_recorded_and_queue_keeps_draining(self, db_session, monkeypatch):
        calls = []
        monkeypatch.setattr(task_dispatch, "_handlers", lambda: fake_handlers(calls))
        dispatcher = InlineDispatcher(session_factory=lambda: nullcontext(db_session))
        dispatcher._draining = True

        dispatcher.submit("broken", {})
        dispatcher.submit("leaf", {"n": 7})
        dispatcher._draining = False
        dispatcher.drain()

        assert dispatcher.failures == [("broken", "handler failed")]
        assert calls == [("leaf", 7)]

    def test_task_limit_leaves_rest_queued(self, db_session, monkeypatch):
        calls = []
        monkeypatch.setattr(task_dispatch, "_handlers", lambda: fake_handlers(calls))
        dispatcher = InlineDispatcher(session_factory=lambda: nullcontext(db_session), max_tasks=2)

        dispatcher.submit("chain", {"n": 3})

        assert len(calls) == 2
        assert len(dispatcher.queue) == 3

    def test_unknown_task_is_a_failure(self, db_session):
        dispatcher = InlineDispatcher(session_factory=lambda: nullcontext(db_session))
        dispatcher.submit("make_coffee", {})
        assert dispatcher.failures == [("make_coffee", "Unknown task type: make_coffee")]


class TestRunTask:

    def test_unknown_task(self, db_session, recorder):
        with pytest.raises(TaskDispatchError):
            run_task(db_session, "nope", {}, recorder)

    def test_job_monitor_task(self, db_session, recorder):
        assert run_task(db_session, JOB_MONITOR, None, recorder)["errors"] == []


class TestThreadDispatcher:

    def test_runs_on_pool(self, db_session, monkeypatch):
        calls = []
        monkeypatch.setattr(task_dispatch, "_handlers", lambda: fake_handlers(calls))
        dispatcher = ThreadDispatcher(max_workers=1, session_factory=lambda: nullcontext(db_session))

        dispatcher.submit("leaf", {"n": 1})
        dispatcher.shutdown(wait=True)

        assert calls == [("leaf", 1)]

    def test_submit_after_shutdown_is_dropped(self):
        dispatcher = ThreadDispatcher(max_workers=1, session_factory=MagicMock())
        dispatcher.shutdown(wait=True)
        dispatcher.submit("leaf", {"n": 1})


class TestHttpDispatcher:

    def test_posts_to_task_route(self):
        dispatcher = HttpDispatcher(base_url="https://leads.example/", timeout=1.0)
        dispatcher._client = MagicMock()
        dispatcher._client.post.return_value = httpx.Response(
            202, request=httpx.Request("POST", "https://leads.example/tasks/geocode-batch")
        )

        dispatcher.submit(GEOCODE_BATCH, {"jobId": 3})

        dispatcher._client.post.assert_called_once_with(
            "https://leads.example/tasks/geocode-batch",
            json={"jobId": 3},
            headers={"Prefer": "respond-async"},
        )

    def test_timeout_counts_as_dispatched(self):
        dispatcher = HttpDispatcher(base_url="https://leads.example", timeout=1.0)
        dispatcher._client = MagicMock()
        dispatcher._client.post.side_effect = httpx.ReadTimeout("still running")

        dispatcher.submit(PROCESS_UPLOAD, {"jobId": 1})

    def test_unknown_task_is_not_sent(self):
        dispatcher = HttpDispatcher(base_url="https://leads.example", timeout=1.0)
        dispatcher._client = MagicMock()

        dispatcher.submit("make_coffee", {})

        dispatcher._client.post.assert_not_called()

    def test_http_error_is_logged_not_raised(self):
        dispatcher = HttpDispatcher(base_url="https://leads.example", timeout=1.0)
        dispatcher._client = MagicMock()
        dispatcher._client.post.return_value = httpx.Response(
            500, request=httpx.Request("POST", "https://leads.example/tasks/process-upload")
        )

        dispatcher.submit(PROCESS_UPLOAD, {"jobId": 1})


class TestBuildDispatcher:

    @pytest.mark.parametrize(
        "mode,cls",
        [("inline", InlineDispatcher), ("http", HttpDispatcher), ("thread", ThreadDispatcher)],
    )
    def test_modes(self, mode, cls):
        dispatcher = build_dispatcher(mode)
        try:
            assert isinstance(dispatcher, cls)
        finally:
            dispatcher.shutdown()

    def test_unknown_mode(self):
        with pytest.raises(TaskDispatchError):
            build_dispatcher("carrier-pigeon")

    def test_set_dispatcher_replaces_global(self):
        replacement = InlineDispatcher()
        with patch.object(task_dispatch, "_dispatcher", None):
            task_dispatch.set_dispatcher(replacement)
            assert task_dispatch.get_dispatcher() is replacement
