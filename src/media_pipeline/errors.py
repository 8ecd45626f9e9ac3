"""Error taxonomy for the generation pipeline.

Every error raised by a stage service, receiver or provider client carries an
``ErrorKind``. The worker consults ``retryable`` to decide whether the queue
should redeliver the job:

- PRECONDITION: missing script, unresolvable customization, unknown row.
  Repeating the job cannot change the outcome.
- TRANSIENT: timeouts, 5xx and rate limiting from a provider. Retried with
  the job's backoff policy.
- PERMANENT: the provider rejected the request outright.
- EXTERNAL_FAILURE: a provider reported failure through a webhook.
- TIMEOUT: the timeout monitor reclaimed a stuck Output.
- CONFLICT: a conditional write lost a race or a correlation id collided.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure classes used for retry decisions."""

    PRECONDITION = "precondition"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    EXTERNAL_FAILURE = "external_failure"
    TIMEOUT = "timeout"
    CONFLICT = "conflict"


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    default_kind = ErrorKind.PERMANENT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


class PreconditionError(PipelineError):
    """A stage was invoked before its inputs were ready."""

    default_kind = ErrorKind.PRECONDITION


class NotFoundError(PreconditionError):
    """Referenced Output, Submission or Article does not exist."""


class InvalidTransitionError(PreconditionError):
    """The current status has no edge for the requested event."""

    def __init__(self, current: str, event: str):
        super().__init__(f"Cannot apply {event} to an output in status {current}")
        self.current = current
        self.event = event


class StaleStateError(PipelineError):
    """A conditional update matched no row because the status moved on."""

    default_kind = ErrorKind.CONFLICT


class CorrelationConflictError(PipelineError):
    """Another in-flight Output already owns this correlation id."""

    default_kind = ErrorKind.CONFLICT


class ProviderError(PipelineError):
    """Base class for errors raised by external provider clients."""


class TransientProviderError(ProviderError):
    default_kind = ErrorKind.TRANSIENT


class PermanentProviderError(ProviderError):
    default_kind = ErrorKind.PERMANENT


class PostProcessingError(PipelineError):
    """FFmpeg post-processing failed; kind mirrors the FFmpeg classification."""


def is_retryable(exc: BaseException) -> bool:
    """Unclassified exceptions are assumed transient."""
    if isinstance(exc, PipelineError):
        return exc.retryable
    return True
