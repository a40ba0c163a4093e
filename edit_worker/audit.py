"""
Audit Message Sink - Forward each agent step's messages to durable storage.

Generation never waits on storage: the agent loop submits a step's ordered
batch and moves on. Per thread there is exactly one drain worker, so batches
for a thread are delivered in submission order and never interleave. Delivery
failures are logged and dropped; later batches are still delivered.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional
from urllib.parse import quote

import httpx

from edit_worker.errors import NotFoundError
from edit_worker.schemas import ThreadMessage

logger = logging.getLogger(__name__)


MessageWriter = Callable[[str, List[ThreadMessage]], object]


# =============================================================================
# CONTROL API WRITER
# =============================================================================

class ControlApiWriter:
    """
    Append messages to a thread through the control plane's HTTP API.

    Network errors and 5xx responses are retried with a fixed backoff; 4xx
    responses are not.
    """

    def __init__(
        self,
        base_url: str,
        api_secret: str,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={"x-api-secret": api_secret},
            transport=transport,
        )
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def __call__(self, thread_id: str, messages: List[ThreadMessage]) -> int:
        """
        Deliver one ordered batch.

        Returns:
            Number of messages the control plane stored

        Raises:
            NotFoundError: If the thread does not exist
            httpx.HTTPError: If delivery failed after all retries
        """
        path = f"/threads/{quote(thread_id, safe='')}/messages"
        payload = {"messages": [message.to_wire() for message in messages]}
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            if attempt:
                self._sleep(self.backoff_seconds)

            try:
                response = self._client.post(path, json=payload)
            except httpx.TransportError as e:
                last_error = e
                continue

            if response.status_code >= 500:
                last_error = httpx.HTTPStatusError(
                    f"Control API returned {response.status_code}",
                    request=response.request,
                    response=response,
                )
                continue

            if response.status_code == 404:
                raise NotFoundError(f"Thread {thread_id} not found")

            response.raise_for_status()
            return int(response.json().get("count", len(messages)))

        raise last_error or httpx.HTTPError("Message delivery failed")

    def close(self) -> None:
        self._client.close()


# =============================================================================
# SINK
# =============================================================================

class AuditSink:
    """Ordered, asynchronous, single-writer-per-thread message delivery."""

    def __init__(self, writer: MessageWriter):
        self._writer = writer
        self._cond = threading.Condition()
        self._queues: Dict[str, Deque[List[ThreadMessage]]] = {}
        self._workers: Dict[str, threading.Thread] = {}

    def submit(self, thread_id: str, messages: List[ThreadMessage]) -> None:
        """Queue a step's messages for delivery. Never blocks on storage."""
        if not messages:
            return

        with self._cond:
            self._queues.setdefault(thread_id, deque()).append(list(messages))
            if thread_id not in self._workers:
                worker = threading.Thread(
                    target=self._drain,
                    args=(thread_id,),
                    name=f"audit-{thread_id}",
                    daemon=True,
                )
                self._workers[thread_id] = worker
                worker.start()

    def flush(self, thread_id: Optional[str] = None, timeout: Optional[float] = None) -> bool:
        """
        Wait until queued batches are delivered (or dropped).

        Args:
            thread_id: Only wait for this thread; all threads if omitted
            timeout: Maximum seconds to wait

        Returns:
            True if everything drained within the timeout
        """
        with self._cond:
            if thread_id is None:
                return self._cond.wait_for(lambda: not self._workers, timeout)
            return self._cond.wait_for(lambda: thread_id not in self._workers, timeout)

    def pending(self, thread_id: str) -> int:
        """Number of batches waiting for delivery on a thread."""
        with self._cond:
            return len(self._queues.get(thread_id, ()))

    def close(self, timeout: Optional[float] = 30.0) -> None:
        """Drain every queue, then release the writer."""
        if not self.flush(timeout=timeout):
            logger.warning("Audit sink closed with undelivered batches")
        close = getattr(self._writer, "close", None)
        if close is not None:
            close()

    def _drain(self, thread_id: str) -> None:
        while True:
            with self._cond:
                queue = self._queues.get(thread_id)
                if not queue:
                    # Retire under the lock so a concurrent submit starts a fresh worker
                    self._queues.pop(thread_id, None)
                    self._workers.pop(thread_id, None)
                    self._cond.notify_all()
                    return
                batch = queue.popleft()

            self._deliver(thread_id, batch)

    def _deliver(self, thread_id: str, batch: List[ThreadMessage]) -> None:
        try:
            self._writer(thread_id, batch)
        except NotFoundError as e:
            logger.error("Dropping %d messages: %s", len(batch), e)
        except Exception:
            logger.exception("Failed to persist %d messages for thread %s", len(batch), thread_id)


# =============================================================================
# MODULE-LEVEL FUNCTIONS
# =============================================================================

_sink: Optional[AuditSink] = None


def get_audit_sink() -> AuditSink:
    """Get the global audit sink, writing to the configured control API."""
    global _sink
    if _sink is None:
        from edit_worker.config import get_config

        config = get_config()
        _sink = AuditSink(ControlApiWriter(config.control_api_url, config.worker_api_secret))
    return _sink
