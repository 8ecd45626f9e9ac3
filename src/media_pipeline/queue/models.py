"""Pydantic models for job queue data structures.

Job payloads form a closed tagged union discriminated by ``type``; the
dispatcher matches on the concrete classes, so adding a job type means
adding a class here and a case there.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ..state import MediaKind


class JobStatus(str, Enum):
    """Job processing states.

    State transitions:
        pending → running     (worker dequeues, available_at reached)
        running → completed   (dispatcher returned)
        running → pending     (retryable failure with attempts left, or crash recovery)
        running → failed      (non-retryable failure or attempts exhausted)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class BackoffPolicy(BaseModel):
    """Delay between attempts of one job."""

    type: BackoffType = Field(default=BackoffType.EXPONENTIAL)
    delay_ms: int = Field(default=2000, ge=0, description="Base delay in milliseconds")

    def delay_for(self, attempts_made: int) -> float:
        """Seconds to wait before the next attempt after ``attempts_made`` failures."""
        if attempts_made < 1:
            return 0.0
        if self.type == BackoffType.FIXED:
            return self.delay_ms / 1000.0
        return self.delay_ms * (2 ** (attempts_made - 1)) / 1000.0


class JobOptions(BaseModel):
    """Per-enqueue retry settings."""

    attempts: int = Field(default=3, ge=1, description="Total delivery attempts")
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    dedupe: bool = Field(
        default=True, description="Reuse a pending/running job with an identical payload"
    )


# --- Payload variants ---


class GenerateScriptJob(BaseModel):
    """Script phase for one Output."""

    type: Literal["generate-script"] = "generate-script"
    kind: MediaKind
    output_id: str
    submission_id: str
    article_id: str
    language: str = "ENGLISH"


class GenerateMediaJob(BaseModel):
    """Media phase for one Output whose script is ready."""

    type: Literal["generate-media"] = "generate-media"
    kind: MediaKind
    output_id: str
    submission_id: str
    customization: Dict[str, Any] = Field(default_factory=dict)


class GenerateOutputJob(BaseModel):
    """Script and media phases back to back in one job."""

    type: Literal["generate-output"] = "generate-output"
    kind: MediaKind
    output_id: str
    submission_id: str
    article_id: str
    language: str = "ENGLISH"
    customization: Dict[str, Any] = Field(default_factory=dict)


class PostProcessVideoJob(BaseModel):
    """Bumpers/music applied to a finished render before completion."""

    type: Literal["post-process-video"] = "post-process-video"
    output_id: str
    submission_id: str
    render_job_id: str
    source_url: str


class VideoCompletionJob(BaseModel):
    """Final webhook-driven completion: persist, transcribe, derive questions."""

    type: Literal["process-video-completion"] = "process-video-completion"
    render_job_id: str
    video_url: str


JobPayload = Annotated[
    Union[
        GenerateScriptJob,
        GenerateMediaJob,
        GenerateOutputJob,
        PostProcessVideoJob,
        VideoCompletionJob,
    ],
    Field(discriminator="type"),
]

_payload_adapter = TypeAdapter(JobPayload)


def parse_payload(data: Dict[str, Any]) -> JobPayload:
    """Validate a stored payload dict into its variant.

    Raises:
        pydantic.ValidationError: Unknown ``type`` or malformed fields.
    """
    return _payload_adapter.validate_python(data)


def is_video_job(payload: JobPayload) -> bool:
    """Video jobs get the slower backoff policy."""
    if isinstance(payload, (PostProcessVideoJob, VideoCompletionJob)):
        return True
    if isinstance(payload, (GenerateMediaJob, GenerateOutputJob)):
        return payload.kind == MediaKind.VIDEO
    return False


class JobContext(BaseModel):
    """Attempt bookkeeping handed from the worker to services."""

    model_config = ConfigDict(frozen=True)

    job_id: Optional[str] = None
    attempt: int = Field(default=1, ge=1)
    max_attempts: int = Field(default=1, ge=1)
    last_error: Optional[str] = Field(default=None, description="Why the previous attempt ended")

    @property
    def is_redelivery(self) -> bool:
        return self.attempt > 1

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


class JobItem(BaseModel):
    """A claimed or stored job."""

    model_config = ConfigDict(use_enum_values=True)

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    job_type: str = Field(..., description="Payload discriminator")
    payload: Dict[str, Any] = Field(..., description="Ids only, never media bytes")
    status: JobStatus = Field(default=JobStatus.PENDING)
    attempts_made: int = Field(default=0, ge=0, description="Failed attempts so far")
    max_attempts: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    dedupe_key: Optional[str] = Field(default=None, description="SHA-256 of the payload")
    created_at: datetime = Field(default_factory=datetime.now)
    available_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    worker_id: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def attempt(self) -> int:
        """1-based number of the current delivery."""
        return self.attempts_made + 1

    def context(self) -> JobContext:
        return JobContext(
            job_id=self.job_id,
            attempt=self.attempt,
            max_attempts=self.max_attempts,
            last_error=self.last_error,
        )

    def typed_payload(self) -> JobPayload:
        return parse_payload(self.payload)


class JobHandle(BaseModel):
    """Returned by enqueue."""

    job_id: str
    job_type: str
    deduplicated: bool = False


class JobStatusView(BaseModel):
    """Externally visible job state."""

    job_id: str
    job_type: str
    state: JobStatus
    progress: int = 0
    attempts_made: int = 0
    max_attempts: int = 1
    result: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
