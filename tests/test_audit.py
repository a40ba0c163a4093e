"""Tests for the audit message sink and the control API writer."""

import json
import random
import threading
import time

import httpx
import pytest

from edit_worker.audit import AuditSink, ControlApiWriter
from edit_worker.errors import NotFoundError
from edit_worker.schemas import ThreadMessage


def batch(label, size=2):
    return [ThreadMessage(role="assistant", content=f"{label}-{i}") for i in range(size)]


class RecordingWriter:
    def __init__(self, fail_on=(), jitter=0.0):
        self.delivered = []
        self.fail_on = set(fail_on)
        self.jitter = jitter
        self._lock = threading.Lock()

    def __call__(self, thread_id, messages):
        if self.jitter:
            time.sleep(random.random() * self.jitter)
        label = messages[0].content.split("-")[0]
        if label in self.fail_on:
            raise httpx.ConnectError("control API unreachable")
        with self._lock:
            self.delivered.append((thread_id, [m.content for m in messages]))
        return len(messages)


class TestAuditSink:
    def test_batches_arrive_in_submission_order(self):
        writer = RecordingWriter(jitter=0.005)
        sink = AuditSink(writer)

        for i in range(20):
            sink.submit("t1", batch(f"b{i}"))

        assert sink.flush(timeout=10)
        assert [contents for _, contents in writer.delivered] == [
            [f"b{i}-0", f"b{i}-1"] for i in range(20)
        ]

    def test_threads_are_independent_but_each_ordered(self):
        writer = RecordingWriter(jitter=0.002)
        sink = AuditSink(writer)

        for i in range(10):
            sink.submit("t1", batch(f"x{i}", size=1))
            sink.submit("t2", batch(f"y{i}", size=1))

        assert sink.flush(timeout=10)
        for thread_id, prefix in (("t1", "x"), ("t2", "y")):
            seen = [contents[0] for tid, contents in writer.delivered if tid == thread_id]
            assert seen == [f"{prefix}{i}-0" for i in range(10)]

    def test_submit_does_not_wait_for_storage(self):
        release = threading.Event()

        def slow_writer(thread_id, messages):
            release.wait(5)

        sink = AuditSink(slow_writer)
        started = time.monotonic()
        sink.submit("t1", batch("a"))
        sink.submit("t1", batch("b"))
        elapsed = time.monotonic() - started

        assert elapsed < 0.5
        assert sink.pending("t1") >= 1
        release.set()
        assert sink.flush("t1", timeout=5)
        assert sink.pending("t1") == 0

    def test_failed_batch_is_dropped_and_later_batches_still_go_out(self):
        writer = RecordingWriter(fail_on={"b1"})
        sink = AuditSink(writer)

        for i in range(3):
            sink.submit("t1", batch(f"b{i}"))

        assert sink.flush(timeout=5)
        assert [contents[0] for _, contents in writer.delivered] == ["b0-0", "b2-0"]

    def test_empty_batches_are_ignored(self):
        writer = RecordingWriter()
        sink = AuditSink(writer)

        sink.submit("t1", [])

        assert sink.flush(timeout=1)
        assert writer.delivered == []


class TestControlApiWriter:
    def make_writer(self, handler, **kwargs):
        return ControlApiWriter(
            "http://control.test/api",
            "s3cret",
            transport=httpx.MockTransport(handler),
            backoff_seconds=0,
            sleep=lambda seconds: None,
            **kwargs,
        )

    def test_posts_camel_case_messages_with_secret(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"count": 2})

        writer = self.make_writer(handler)
        messages = [
            ThreadMessage(role="tool_call", tool_name="readFile", tool_args={"path": "a"}),
            ThreadMessage(role="assistant", content="done"),
        ]

        assert writer("thread 1", messages) == 2

        request = seen[0]
        assert request.method == "POST"
        assert request.url.raw_path == b"/api/threads/thread%201/messages"
        assert request.headers["x-api-secret"] == "s3cret"
        assert json.loads(request.content) == {
            "messages": [
                {"role": "tool_call", "toolName": "readFile", "toolArgs": {"path": "a"}},
                {"role": "assistant", "content": "done"},
            ]
        }

    def test_retries_server_errors(self):
        responses = [httpx.Response(503), httpx.Response(200, json={"count": 1})]

        writer = self.make_writer(lambda request: responses.pop(0))

        assert writer("t1", batch("a", size=1)) == 1
        assert responses == []

    def test_gives_up_after_max_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        writer = self.make_writer(handler, max_retries=2)

        with pytest.raises(httpx.HTTPStatusError):
            writer("t1", batch("a"))
        assert len(calls) == 3

    def test_unknown_thread_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, json={"error": "Thread not found"})

        writer = self.make_writer(handler)

        with pytest.raises(NotFoundError):
            writer("missing", batch("a"))
        assert len(calls) == 1
