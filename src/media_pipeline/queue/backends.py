"""Abstract base classes for the job queue and worker pool.

These abstractions keep the dispatcher and API independent of the local
SQLite implementation so the queue can move to Redis-backed infrastructure
without touching stage services.
"""

from abc import ABC, abstractmethod
from threading import Event
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .models import JobHandle, JobItem, JobOptions, JobPayload, JobStatus, JobStatusView


class QueueBackend(ABC):
    """Abstract queue interface for local/distributed backends.

    Implementations must provide:
    - Thread-safe atomic dequeue operations
    - Delayed redelivery according to each job's backoff policy
    - At-least-once delivery (crash recovery via reset_stale_running())
    - Heartbeat support for long-running jobs
    """

    @abstractmethod
    def enqueue(self, payload: "JobPayload", options: Optional["JobOptions"] = None) -> "JobHandle":
        """Add a job for ``payload``.

        Args:
            payload: One of the job payload variants
            options: Attempts, backoff and dedupe settings

        Returns:
            Handle of the new job, or of an identical pending/running job

        Implementation notes:
        - With dedupe enabled, an identical payload that is still pending or
          running must not be inserted twice
        - Payloads carry ids only
        """
        pass

    @abstractmethod
    def dequeue(self, worker_id: str) -> Optional["JobItem"]:
        """Atomically claim the oldest available job and mark it running.

        Args:
            worker_id: Unique identifier for the claiming worker

        Returns:
            JobItem if a job is available now, None otherwise

        Implementation notes:
        - MUST be safe with concurrent callers (UPDATE...RETURNING)
        - MUST skip jobs whose backoff delay has not elapsed
        """
        pass

    @abstractmethod
    def ack_success(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        """Mark a running job completed and store its (small) result."""
        pass

    @abstractmethod
    def ack_fail(self, job_id: str, error: str, retry: bool) -> "JobStatus":
        """Record a failed attempt.

        Args:
            job_id: Job identifier
            error: Error message (truncated by the implementation)
            retry: False for non-retryable errors

        Returns:
            PENDING if the job was rescheduled, FAILED if it is now terminal

        Implementation notes:
        - Terminal once ``retry`` is False or attempts are exhausted
        - Never touches domain rows; services own Output error state
        """
        pass

    @abstractmethod
    def get_status(self, job_id: str) -> Optional["JobStatusView"]:
        """Current state, progress, result or failure reason; None if unknown."""
        pass

    @abstractmethod
    def remove(self, job_id: str) -> bool:
        """Delete a job that is not running. Returns True if a row was removed."""
        pass

    @abstractmethod
    def prune(self, keep_completed: int, completed_max_age_s: int,
              keep_failed: int, failed_max_age_s: int) -> int:
        """Apply retention caps to finished jobs. Returns number removed."""
        pass

    @abstractmethod
    def reset_stale_running(self, timeout_s: int = 7200) -> int:
        """Return crashed workers' jobs to pending. Returns count reset."""
        pass

    @abstractmethod
    def update_heartbeat(self, job_id: str) -> None:
        """Refresh the heartbeat of a running job."""
        pass

    @abstractmethod
    def update_progress(self, job_id: str, progress: int) -> None:
        """Record 0-100 progress for a running job."""
        pass

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        """Job counts per status plus total."""
        pass

    @abstractmethod
    def list_jobs(self, status_filter: Optional[str] = None, limit: int = 50) -> List["JobStatusView"]:
        """Most recent jobs, optionally filtered by status."""
        pass


class WorkerPool(ABC):
    """Abstract worker pool consuming a QueueBackend."""

    @abstractmethod
    def run(self, stop_event: Optional[Event] = None, max_jobs: Optional[int] = None,
            until_empty: bool = False) -> Dict[str, int]:
        """Process jobs until stopped, returning succeeded/failed/retried counts."""
        pass

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None:
        """Graceful shutdown."""
        pass
