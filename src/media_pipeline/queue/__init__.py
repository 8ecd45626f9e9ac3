"""Durable job queue and worker pool."""

from .backends import QueueBackend, WorkerPool
from .hashing import compute_payload_hash
from .models import (
    BackoffPolicy,
    BackoffType,
    GenerateMediaJob,
    GenerateOutputJob,
    GenerateScriptJob,
    JobContext,
    JobHandle,
    JobItem,
    JobOptions,
    JobPayload,
    JobStatus,
    JobStatusView,
    PostProcessVideoJob,
    VideoCompletionJob,
    is_video_job,
    parse_payload,
)
from .sqlite_backend import SQLiteQueue
from .worker import JobWorkerPool, execute_job

__all__ = [
    "QueueBackend",
    "WorkerPool",
    "compute_payload_hash",
    "BackoffPolicy",
    "BackoffType",
    "GenerateMediaJob",
    "GenerateOutputJob",
    "GenerateScriptJob",
    "JobContext",
    "JobHandle",
    "JobItem",
    "JobOptions",
    "JobPayload",
    "JobStatus",
    "JobStatusView",
    "PostProcessVideoJob",
    "VideoCompletionJob",
    "is_video_job",
    "parse_payload",
    "SQLiteQueue",
    "JobWorkerPool",
    "execute_job",
]
