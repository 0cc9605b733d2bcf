"""Webhook worker pool — bounded queue, fixed number of worker threads.

The webhook endpoint only verifies, records and enqueues. Workers pull
jobs off the queue and run the handler inside an app context with the
request's correlation id restored.

- enqueue() never blocks: a full queue returns False and the caller
  decides what to do (see WEBHOOK_QUEUE_FULL_POLICY).
- A job that raises is logged and counted as failed; the worker moves on.
- Nothing is retried here. Stripe redelivers on non-2xx, and
  reconciliation repairs anything a lost job left behind.
- shutdown() stops intake, lets workers drain until the timeout, then
  discards whatever is still queued.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from billsync.logging_utils import correlation_id_var, new_correlation_id

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


@dataclass
class WebhookJob:
    event: Any
    correlation_id: str
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class JobOutcome:
    event_id: Optional[str]
    event_type: Optional[str]
    ok: bool
    error: Optional[str] = None
    duration: float = 0.0


class WebhookWorkerPool:
    def __init__(self, app, dispatch, worker_count=5, queue_size=100):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")

        self.app = app
        self.dispatch = dispatch
        self.worker_count = worker_count
        self.queue_size = queue_size

        self._queue = queue.Queue(maxsize=queue_size)
        self._threads = []
        self._lock = threading.Lock()
        self._accepting = False
        self._stopping = threading.Event()
        self._abandon = threading.Event()
        self._counters = {
            "enqueued": 0,
            "rejected": 0,
            "processed": 0,
            "failed": 0,
            "abandoned": 0,
            "in_flight": 0,
        }
        self.last_failure = None

    # ── Lifecycle ──

    def start(self):
        with self._lock:
            if self._threads:
                return
            self._accepting = True
            for i in range(self.worker_count):
                thread = threading.Thread(
                    target=self._worker, args=(i,),
                    name=f"webhook-worker-{i}", daemon=True,
                )
                self._threads.append(thread)
                thread.start()
        logger.info(
            f"Started {self.worker_count} webhook workers (queue size {self.queue_size})"
        )

    @property
    def running(self):
        return self._accepting

    def shutdown(self, timeout=30.0):
        """Stop accepting jobs and drain the queue for up to `timeout` seconds.

        Workers keep pulling jobs until the queue is idle or the deadline
        passes. Jobs still queued at the deadline are discarded. Returns the
        number of abandoned jobs.
        """
        with self._lock:
            if not self._threads:
                return 0
            self._accepting = False

        deadline = time.monotonic() + timeout
        if not self.wait_idle(timeout):
            logger.warning(f"Webhook queue not drained within {timeout}s")
        self._stopping.set()
        for thread in self._threads:
            thread.join(max(0.0, deadline - time.monotonic()))

        self._abandon.set()
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            self._queue.task_done()
            discarded += 1

        still_running = [t.name for t in self._threads if t.is_alive()]
        with self._lock:
            self._counters["abandoned"] += discarded
            abandoned = self._counters["abandoned"]
            in_flight = self._counters["in_flight"]

        if still_running or abandoned:
            logger.warning(
                f"Webhook worker shutdown timed out after {timeout}s: "
                f"{abandoned} queued jobs abandoned, {in_flight} still in flight"
            )
        else:
            logger.info("All webhook workers shut down gracefully")
        return abandoned

    # ── Intake ──

    def enqueue(self, event, correlation_id=None):
        """Queue a verified event. Returns False if the pool is stopped or full."""
        job = WebhookJob(event=event, correlation_id=correlation_id or new_correlation_id())
        # shutdown flips _accepting under the same lock, so no job lands after the drain
        with self._lock:
            if not self._accepting:
                logger.warning(f"Webhook pool not accepting jobs, event {event.event_id} not queued")
                return False
            try:
                self._queue.put_nowait(job)
            except queue.Full:
                self._counters["rejected"] += 1
                logger.warning(f"Webhook job queue is full, event {event.event_id} not queued")
                return False
            self._counters["enqueued"] += 1
        return True

    # ── Workers ──

    def _worker(self, index):
        while True:
            try:
                job = self._queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._stopping.is_set():
                    break
                continue

            try:
                if self._abandon.is_set():
                    with self._lock:
                        self._counters["abandoned"] += 1
                    continue
                self.run_job(job)
            finally:
                self._queue.task_done()

        logger.debug(f"Webhook worker {index} exiting")

    def run_job(self, job):
        """Run one job. Never raises; the result is returned as a JobOutcome."""
        event = job.event
        event_id = getattr(event, "event_id", None)
        event_type = getattr(event, "event_type", None)

        token = correlation_id_var.set(job.correlation_id)
        with self._lock:
            self._counters["in_flight"] += 1
        started = time.monotonic()
        try:
            with self.app.app_context():
                self.dispatch(event)
            outcome = JobOutcome(event_id, event_type, ok=True)
        except Exception as e:
            logger.error(f"Webhook job {event_id} ({event_type}) failed: {e}", exc_info=True)
            outcome = JobOutcome(event_id, event_type, ok=False, error=str(e))
        finally:
            correlation_id_var.reset(token)

        outcome.duration = time.monotonic() - started
        with self._lock:
            self._counters["in_flight"] -= 1
            if outcome.ok:
                self._counters["processed"] += 1
            else:
                self._counters["failed"] += 1
                self.last_failure = outcome
        return outcome

    # ── Introspection ──

    def wait_idle(self, timeout=None):
        """Block until every queued job has been processed. False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                idle = self._queue.unfinished_tasks == 0
            if idle:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.01)

    def stats(self):
        with self._lock:
            snapshot = dict(self._counters)
            last_failure = self.last_failure
        snapshot.update({
            "running": self._accepting,
            "workers": self.worker_count,
            "alive_workers": sum(1 for t in self._threads if t.is_alive()),
            "queue_capacity": self.queue_size,
            "queued": self._queue.qsize(),
        })
        if last_failure is not None:
            snapshot["last_failure"] = {
                "event_id": last_failure.event_id,
                "event_type": last_failure.event_type,
                "error": last_failure.error,
            }
        return snapshot
