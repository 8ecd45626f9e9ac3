"""Output and Submission status types and the Output state machine.

All status changes in the pipeline go through ``transition``. Services never
compare status strings to decide whether a step is legal; they ask the table.

    PENDING --START_SCRIPT--> PROCESSING --SCRIPT_DONE--> SCRIPT_READY
    SCRIPT_READY --START_MEDIA--> PROCESSING --COMPLETE--> COMPLETED
    PENDING --START_MEDIA--> PROCESSING          (monolithic path, script required)
    PENDING/SCRIPT_READY/PROCESSING --FAIL--> FAILED
    PROCESSING --TIME_OUT--> FAILED
    FAILED --RETRY--> PROCESSING                  (queue redelivery of the failed job)
    FAILED/COMPLETED --REGENERATE_MEDIA--> SCRIPT_READY
    FAILED/COMPLETED --REGENERATE_SCRIPT--> PENDING
"""

from enum import Enum

from .errors import InvalidTransitionError


class MediaKind(str, Enum):
    """Kinds of generated media; one Output table per kind."""

    AUDIO = "audio"
    VIDEO = "video"
    PODCAST = "podcast"
    QUIZ = "quiz"
    INTERACTIVE_PODCAST = "interactive_podcast"

    @property
    def label(self) -> str:
        return _KIND_LABELS[self]


_KIND_LABELS = {
    MediaKind.AUDIO: "Audio",
    MediaKind.VIDEO: "Video",
    MediaKind.PODCAST: "Podcast",
    MediaKind.QUIZ: "Quiz",
    MediaKind.INTERACTIVE_PODCAST: "Interactive podcast",
}


class OutputStatus(str, Enum):
    PENDING = "PENDING"
    SCRIPT_READY = "SCRIPT_READY"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SubmissionStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PARTIAL_COMPLETE = "PARTIAL_COMPLETE"  # scripts awaiting review
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Event(str, Enum):
    START_SCRIPT = "START_SCRIPT"
    SCRIPT_DONE = "SCRIPT_DONE"
    START_MEDIA = "START_MEDIA"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"
    TIME_OUT = "TIME_OUT"
    RETRY = "RETRY"
    REGENERATE_MEDIA = "REGENERATE_MEDIA"
    REGENERATE_SCRIPT = "REGENERATE_SCRIPT"


_TRANSITIONS = {
    (OutputStatus.PENDING, Event.START_SCRIPT): OutputStatus.PROCESSING,
    (OutputStatus.PROCESSING, Event.SCRIPT_DONE): OutputStatus.SCRIPT_READY,
    (OutputStatus.SCRIPT_READY, Event.START_MEDIA): OutputStatus.PROCESSING,
    (OutputStatus.PENDING, Event.START_MEDIA): OutputStatus.PROCESSING,
    (OutputStatus.PROCESSING, Event.COMPLETE): OutputStatus.COMPLETED,
    (OutputStatus.PENDING, Event.FAIL): OutputStatus.FAILED,
    (OutputStatus.SCRIPT_READY, Event.FAIL): OutputStatus.FAILED,
    (OutputStatus.PROCESSING, Event.FAIL): OutputStatus.FAILED,
    (OutputStatus.PROCESSING, Event.TIME_OUT): OutputStatus.FAILED,
    (OutputStatus.FAILED, Event.RETRY): OutputStatus.PROCESSING,
    (OutputStatus.FAILED, Event.REGENERATE_MEDIA): OutputStatus.SCRIPT_READY,
    (OutputStatus.COMPLETED, Event.REGENERATE_MEDIA): OutputStatus.SCRIPT_READY,
    (OutputStatus.FAILED, Event.REGENERATE_SCRIPT): OutputStatus.PENDING,
    (OutputStatus.COMPLETED, Event.REGENERATE_SCRIPT): OutputStatus.PENDING,
}


def transition(current: OutputStatus, event: Event) -> OutputStatus:
    """Return the status reached by applying ``event`` to ``current``.

    Raises:
        InvalidTransitionError: If the state machine has no such edge.
    """
    current = OutputStatus(current)
    event = Event(event)
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransitionError(current.value, event.value) from None


def allowed_events(current: OutputStatus) -> list[Event]:
    """Events that have an edge out of ``current``, in declaration order."""
    current = OutputStatus(current)
    return [event for (status, event) in _TRANSITIONS if status == current]


def is_failure_event(event: Event) -> bool:
    return event in (Event.FAIL, Event.TIME_OUT)
