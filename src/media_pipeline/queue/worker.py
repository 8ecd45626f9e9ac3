"""Worker pool implementation using ThreadPoolExecutor.

This module runs the dispatcher against the queue with:
- A fixed number of worker slots (the only backpressure mechanism; sized to
  the speech provider's concurrent request limit)
- One queue connection per slot (SQLite connections are per thread)
- Heartbeat threads for long-running jobs
- Retry decisions driven by the error's ``retryable`` flag
- Slots that survive queue write failures (the job is recovered as stale)
- Graceful shutdown through a stop event
"""

import logging
import os
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional

from ..errors import is_retryable
from .backends import QueueBackend, WorkerPool
from .models import JobItem, JobStatus

logger = logging.getLogger(__name__)


class _JobBudget:
    """Shared cap on jobs claimed across slots (None = unlimited)."""

    def __init__(self, limit: Optional[int]):
        self._remaining = limit
        self._lock = threading.Lock()

    def take(self) -> bool:
        with self._lock:
            if self._remaining is None:
                return True
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True

    def give_back(self) -> None:
        with self._lock:
            if self._remaining is not None:
                self._remaining += 1


class JobWorkerPool(WorkerPool):
    """Thread-based worker pool consuming jobs from the queue.

    Features:
    - ``concurrency`` long-lived slots, each polling the queue
    - Context manager for graceful shutdown
    - Stop event, job budget and drain mode for CLI and tests
    """

    def __init__(
        self,
        queue_factory: Callable[[], QueueBackend],
        dispatcher,
        concurrency: int = 2,
        poll_interval_s: float = 1.0,
        heartbeat_interval_s: int = 60,
    ):
        """Initialize worker pool.

        Args:
            queue_factory: Opens a new queue connection (called once per slot)
            dispatcher: Object with ``process_job(job) -> dict``
            concurrency: Number of parallel slots
            poll_interval_s: Sleep between polls when nothing is due
            heartbeat_interval_s: Heartbeat period for running jobs
        """
        self.queue_factory = queue_factory
        self.dispatcher = dispatcher
        self.concurrency = concurrency
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self._executor: Optional[ThreadPoolExecutor] = None

    def __enter__(self):
        """Create worker threads on context entry."""
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="media-worker"
        )
        return self

    def __exit__(self, *args):
        """Shutdown worker pool on context exit."""
        self.shutdown(wait=True)

    def run(
        self,
        stop_event: Optional[threading.Event] = None,
        max_jobs: Optional[int] = None,
        until_empty: bool = False,
    ) -> Dict[str, int]:
        """Process jobs until stopped.

        Args:
            stop_event: Set to stop all slots after their current job
            max_jobs: Stop after this many jobs were claimed
            until_empty: Stop a slot as soon as nothing is due

        Returns:
            Counts of succeeded, retried and failed jobs
        """
        if not self._executor:
            raise RuntimeError("Worker pool not initialized (use with statement)")

        stop_event = stop_event or threading.Event()
        budget = _JobBudget(max_jobs)
        futures = [
            self._executor.submit(self._slot_loop, slot, stop_event, budget, until_empty)
            for slot in range(self.concurrency)
        ]

        totals: Counter = Counter()
        for future in futures:
            totals.update(future.result())
        return {key: totals.get(key, 0) for key in ("succeeded", "retried", "failed")}

    def shutdown(self, wait: bool = True):
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def _slot_loop(self, slot: int, stop_event: threading.Event, budget: _JobBudget,
                   until_empty: bool) -> Counter:
        queue = self.queue_factory()
        worker_id = f"worker-{os.getpid()}-{slot}"
        stats: Counter = Counter()
        logger.info("%s started", worker_id)

        try:
            while not stop_event.is_set():
                if not budget.take():
                    break
                job = None
                try:
                    job = queue.dequeue(worker_id)
                    if job is None:
                        budget.give_back()
                        if until_empty:
                            break
                        stop_event.wait(self.poll_interval_s)
                        continue

                    outcome = execute_job(
                        job, queue, self.dispatcher, self.queue_factory, self.heartbeat_interval_s
                    )
                except Exception:
                    # A job left running here is picked up again by stale-job recovery
                    logger.exception("%s: queue operation failed, slot continues", worker_id)
                    if job is None:
                        budget.give_back()
                        if until_empty:
                            break
                    stop_event.wait(self.poll_interval_s)
                    continue
                stats[outcome] += 1
        finally:
            close = getattr(queue, "close", None)
            if close:
                close()
            logger.info("%s stopped (%s)", worker_id, dict(stats))

        return stats


def execute_job(
    job: JobItem,
    queue: QueueBackend,
    dispatcher,
    queue_factory: Callable[[], QueueBackend],
    heartbeat_interval_s: int = 60,
) -> str:
    """Run one claimed job and acknowledge it.

    Args:
        job: Claimed job
        queue: Queue connection owned by the calling slot
        dispatcher: Routes the job to its service
        queue_factory: Used by the heartbeat thread for its own connection
        heartbeat_interval_s: Heartbeat period

    Returns:
        "succeeded", "retried" or "failed"

    Error handling:
    - Non-retryable errors (preconditions, permanent provider rejections):
      terminal immediately
    - Everything else: rescheduled per the job's backoff policy until
      attempts are exhausted
    """
    start_time = time.time()
    heartbeat = _start_heartbeat(queue_factory, job.job_id, heartbeat_interval_s)

    try:
        result = dispatcher.process_job(job)
    except Exception as e:
        error_msg = f"{type(e).__name__}: {e}"
        state = queue.ack_fail(job.job_id, error_msg, retry=is_retryable(e))
        return "retried" if state == JobStatus.PENDING else "failed"
    finally:
        _stop_heartbeat(heartbeat)

    queue.ack_success(job.job_id, result)
    logger.info("Job %s (%s) done in %.2fs", job.job_id, job.job_type, time.time() - start_time)
    return "succeeded"


def _start_heartbeat(queue_factory: Callable[[], QueueBackend], job_id: str, interval_s: int):
    """Start background thread to refresh the job heartbeat.

    Returns:
        Tuple of (thread, stop_event) for cleanup

    The thread opens its own queue connection and is a daemon so it never
    blocks process exit.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        queue = queue_factory()
        try:
            while not stop_event.wait(interval_s):
                try:
                    queue.update_heartbeat(job_id)
                except Exception:
                    logger.warning("Heartbeat failed for %s", job_id, exc_info=True)
        finally:
            close = getattr(queue, "close", None)
            if close:
                close()

    thread = threading.Thread(target=heartbeat_loop, daemon=True, name=f"heartbeat-{job_id[:8]}")
    thread.start()

    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data):
    """Signal the heartbeat thread to stop and wait up to 5s."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)
