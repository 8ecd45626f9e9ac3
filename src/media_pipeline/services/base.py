"""Two-phase stage service shared by every media kind.

Script phase (cheap, text only):

    PENDING --START_SCRIPT--> PROCESSING --SCRIPT_DONE--> SCRIPT_READY

Media phase (paid rendering):

    SCRIPT_READY --START_MEDIA--> PROCESSING --COMPLETE--> COMPLETED
                                             (or stays PROCESSING for
                                              asynchronous renders)

Errors that end the job (non-retryable ones, or any error on the final
attempt) mark the Output FAILED with the error text before the exception
propagates to the queue. A retryable error on an earlier attempt leaves the
Output where it was, so the Submission does not read FAILED while a retry is
still scheduled. A queue redelivery reopens the Output with the RETRY event;
if the previous attempt left it PROCESSING (a retry in waiting, or a worker
that died mid-stage) that attempt is closed out as FAILED first.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from ..errors import PipelineError, PreconditionError, is_retryable
from ..queue.models import JobContext
from ..side_effects import run_best_effort
from ..state import Event, MediaKind, OutputStatus, transition

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 150

INTERRUPTED_ATTEMPT = "Previous attempt did not finish"

# Statuses from which FAIL is a legal edge
_FAILABLE = (OutputStatus.PENDING, OutputStatus.SCRIPT_READY, OutputStatus.PROCESSING)


def estimate_duration_s(text: str, words_per_minute: int = WORDS_PER_MINUTE) -> int:
    """Spoken duration estimate in whole seconds."""
    words = len(text.split())
    return math.ceil(words / words_per_minute * 60)


class StageService(ABC):
    """Base class for per-kind generation services.

    Subclasses implement ``build_script`` and ``render_media`` and may
    override ``prepare_media`` to validate customization before anything is
    written. ``asynchronous`` services leave the Output PROCESSING after
    ``render_media`` and rely on a webhook to complete it.
    """

    kind: MediaKind
    asynchronous = False

    def __init__(self, store, text, tagger=None):
        self.store = store
        self.text = text
        self.tagger = tagger

    # --- hooks ---

    @abstractmethod
    def build_script(self, article: Dict[str, Any], output: Dict[str, Any], language: str) -> Dict[str, Any]:
        """Call text generation and return the fields to store (must include ``script``)."""

    def prepare_media(self, output: Dict[str, Any], customization: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve customization into fields written when entering PROCESSING.

        Raises:
            PreconditionError: Customization cannot be resolved.
        """
        return {}

    @abstractmethod
    def render_media(self, output: Dict[str, Any], submission: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Produce the media. Returns final fields, or None when completion is asynchronous."""

    def awaiting_completion(self, output: Dict[str, Any]) -> bool:
        """True when a PROCESSING Output is only waiting on an external callback."""
        return False

    # --- phases ---

    def generate_script(
        self, article_id: str, output_id: str, language: str, ctx: Optional[JobContext] = None
    ) -> Dict[str, Any]:
        ctx = ctx or JobContext()
        output = self.store.get_output(self.kind, output_id)
        if ctx.is_redelivery and OutputStatus(output["status"]) == OutputStatus.SCRIPT_READY:
            # Previous attempt finished but was never acknowledged
            return output
        output = self._close_interrupted(output, ctx)
        event = self._entry_event(output, Event.START_SCRIPT, ctx)
        transition(output["status"], event)

        try:
            article = self.store.get_article(article_id)
        except PipelineError as e:
            self._mark_failed(output_id, e, ctx)
            raise

        self.store.transition_output(self.kind, output_id, event)
        try:
            values = self.build_script(article, output, language)
            if not (values.get("script") or "").strip():
                raise PreconditionError("Script generation returned empty text")
            output = self.store.transition_output(self.kind, output_id, Event.SCRIPT_DONE, **values)
        except Exception as e:
            self._mark_failed(output_id, e, ctx)
            raise

        logger.info("%s script ready for output %s", self.kind.label, output_id)
        return output

    def generate_media_from_script(
        self,
        output_id: str,
        customization: Optional[Dict[str, Any]] = None,
        ctx: Optional[JobContext] = None,
    ) -> Dict[str, Any]:
        ctx = ctx or JobContext()
        output = self.store.get_output(self.kind, output_id)
        status = OutputStatus(output["status"])
        if ctx.is_redelivery and status == OutputStatus.COMPLETED:
            return output
        if ctx.is_redelivery and status == OutputStatus.PROCESSING and self.awaiting_completion(output):
            # The render was submitted before the previous attempt was lost
            logger.info("%s output %s already awaiting its webhook", self.kind.label, output_id)
            return output
        output = self._close_interrupted(output, ctx)
        status = OutputStatus(output["status"])

        if not (output.get("script") or "").strip():
            if status == OutputStatus.PENDING:
                # Not a failure: the script phase simply has not run yet
                raise PreconditionError(
                    f"{self.kind.label} output {output_id} has no script to render yet"
                )
            error = PreconditionError("No script available - script generation may have failed")
            self._mark_failed(output_id, error, ctx)
            raise error

        event = self._entry_event(output, Event.START_MEDIA, ctx)
        transition(status, event)

        try:
            entry_values = self.prepare_media(output, customization or {})
        except PipelineError as e:
            self._mark_failed(output_id, e, ctx)
            raise

        output = self.store.transition_output(self.kind, output_id, event, **entry_values)
        try:
            submission = self.store.get_submission(output["submissionId"])
            values = self.render_media(output, submission)
            if values is None:
                logger.info("%s output %s submitted, awaiting webhook", self.kind.label, output_id)
                return self.store.get_output(self.kind, output_id)
            output = self.store.transition_output(self.kind, output_id, Event.COMPLETE, **values)
        except Exception as e:
            self._mark_failed(output_id, e, ctx)
            raise

        logger.info("%s output %s completed", self.kind.label, output_id)
        if self.tagger is not None:
            run_best_effort("auto-tagging", self.tagger.tag, self.kind, output_id)
        return output

    def generate(
        self,
        article_id: str,
        output_id: str,
        language: str,
        customization: Optional[Dict[str, Any]] = None,
        ctx: Optional[JobContext] = None,
    ) -> Dict[str, Any]:
        """Script and media in one job.

        A redelivery after a media-phase failure keeps the existing script.
        """
        ctx = ctx or JobContext()
        output = self.store.get_output(self.kind, output_id)
        status = OutputStatus(output["status"])
        has_script = bool((output.get("script") or "").strip())
        resume_media = ctx.is_redelivery and has_script and status in (
            OutputStatus.FAILED,
            OutputStatus.SCRIPT_READY,
            OutputStatus.PROCESSING,
        )
        if not resume_media:
            self.generate_script(article_id, output_id, language, ctx)
        return self.generate_media_from_script(output_id, customization, ctx)

    def update_script(self, output_id: str, script: str) -> Dict[str, Any]:
        """Replace the reviewed script while the Output is SCRIPT_READY."""
        if not script.strip():
            raise PreconditionError("Script cannot be empty")
        self.store.update_output(
            self.kind, output_id, require_status=OutputStatus.SCRIPT_READY, script=script
        )
        return self.store.get_output(self.kind, output_id)

    def regenerate(self, output_id: str, script: Optional[str] = None) -> Dict[str, Any]:
        """Reopen a FAILED or COMPLETED Output.

        With a (possibly edited) script the Output returns to SCRIPT_READY and
        only the media phase runs again; without one it returns to PENDING
        for a fresh script phase. ``error`` is cleared either way.
        """
        output = self.store.get_output(self.kind, output_id)
        new_script = script if script is not None else output.get("script")
        if new_script and new_script.strip():
            return self.store.transition_output(
                self.kind, output_id, Event.REGENERATE_MEDIA, script=new_script
            )
        return self.store.transition_output(self.kind, output_id, Event.REGENERATE_SCRIPT)

    # --- helpers ---

    def _entry_event(self, output: Dict[str, Any], event: Event, ctx: JobContext) -> Event:
        if ctx.is_redelivery and OutputStatus(output["status"]) == OutputStatus.FAILED:
            return Event.RETRY
        return event

    def _close_interrupted(self, output: Dict[str, Any], ctx: JobContext) -> Dict[str, Any]:
        """Fail an Output the previous attempt left PROCESSING so RETRY can reopen it."""
        if not ctx.is_redelivery or OutputStatus(output["status"]) != OutputStatus.PROCESSING:
            return output
        reason = ctx.last_error or INTERRUPTED_ATTEMPT
        logger.warning(
            "%s output %s still PROCESSING on attempt %d, closing previous attempt: %s",
            self.kind.label, output["id"], ctx.attempt, reason,
        )
        return self.store.transition_output(self.kind, output["id"], Event.FAIL, error=reason)

    def _mark_failed(self, output_id: str, exc: BaseException, ctx: JobContext) -> None:
        """Persist the failure reason once the job will not be retried; the caller re-raises ``exc``."""
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        if is_retryable(exc) and not ctx.is_final_attempt:
            logger.warning(
                "%s output %s attempt %d/%d failed, will retry: %s",
                self.kind.label, output_id, ctx.attempt, ctx.max_attempts, message,
            )
            return
        current = OutputStatus(self.store.get_output(self.kind, output_id)["status"])
        if current not in _FAILABLE:
            logger.warning(
                "%s output %s is %s, not recording failure: %s",
                self.kind.label, output_id, current.value, message,
            )
            return
        try:
            self.store.transition_output(self.kind, output_id, Event.FAIL, error=message)
        except PipelineError:
            logger.warning("Could not mark %s output %s failed", self.kind.value, output_id, exc_info=True)
            return
        logger.error("%s output %s failed: %s", self.kind.label, output_id, message)

    def _language(self, submission: Dict[str, Any]) -> str:
        return submission.get("language") or "ENGLISH"
