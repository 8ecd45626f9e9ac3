"""Thread-safe entry point for enqueueing jobs.

The API, the webhook receivers and the dispatcher all enqueue from
different threads. SQLite connections cannot cross threads, so each
thread lazily opens its own queue connection.
"""

import logging
import threading
from typing import Callable, Optional

from .models import JobPolicyConfig, QueueConfig
from .queue import BackoffPolicy, BackoffType, JobHandle, JobOptions, JobPayload, QueueBackend, is_video_job
from .queue.models import JobStatusView

logger = logging.getLogger(__name__)


def job_options(policy: JobPolicyConfig) -> JobOptions:
    return JobOptions(
        attempts=policy.attempts,
        backoff=BackoffPolicy(type=BackoffType(policy.backoff_type), delay_ms=policy.backoff_delay_ms),
    )


class JobScheduler:
    """Applies the per-family retry policy and enqueues on a thread-local connection."""

    def __init__(self, queue_factory: Callable[[], QueueBackend], config: Optional[QueueConfig] = None):
        self.queue_factory = queue_factory
        self.config = config or QueueConfig()
        self._local = threading.local()

    @property
    def queue(self) -> QueueBackend:
        queue = getattr(self._local, "queue", None)
        if queue is None:
            queue = self.queue_factory()
            self._local.queue = queue
        return queue

    def options_for(self, payload: JobPayload) -> JobOptions:
        policy = self.config.video_jobs if is_video_job(payload) else self.config.text_jobs
        return job_options(policy)

    def enqueue(self, payload: JobPayload, options: Optional[JobOptions] = None) -> JobHandle:
        handle = self.queue.enqueue(payload, options or self.options_for(payload))
        if handle.deduplicated:
            logger.info("Job %s already queued for identical %s payload", handle.job_id, handle.job_type)
        else:
            logger.info("Enqueued %s job %s", handle.job_type, handle.job_id)
        return handle

    def get_status(self, job_id: str) -> Optional[JobStatusView]:
        return self.queue.get_status(job_id)

    def remove(self, job_id: str) -> bool:
        return self.queue.remove(job_id)
