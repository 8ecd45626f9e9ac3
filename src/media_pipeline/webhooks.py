"""Webhook-driven completion of asynchronous video renders.

Render and captioning providers call back with the correlation id that was
stored on the Output when the work was submitted. Every write made here is
conditioned on ``status = PROCESSING`` and that correlation id, so a
duplicate delivery, a late delivery after the timeout monitor already failed
the Output, or a delivery for an id nobody holds is a logged no-op.

Flow after a successful render::

    render webhook -> captioning (optional) -> caption webhook
        -> post-process-video job (bumpers/music, optional)
        -> process-video-completion job -> COMPLETED
"""

import hashlib
import hmac
import logging
import math
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .errors import PipelineError, ProviderError, is_retryable
from .models import VideoConfig
from .providers.base import Transcript
from .providers.storage import artifact_key
from .queue.models import JobContext, PostProcessVideoJob, VideoCompletionJob
from .side_effects import run_best_effort
from .state import Event, MediaKind, OutputStatus

logger = logging.getLogger(__name__)

TRANSCRIPT_UNAVAILABLE = "Transcript not available"

RENDER_SUCCESS = "avatar_video.success"
RENDER_FAILURE = "avatar_video.fail"


class CorrelationField(str, Enum):
    """Video columns holding provider correlation ids."""

    RENDER = "renderJobId"
    CAPTION = "captionJobId"


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check a hex HMAC-SHA256 of the raw request body."""
    if not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


# --- Inbound payloads ---


class RenderEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    video_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("video_id", "videoId"))
    url: Optional[str] = Field(default=None, validation_alias=AliasChoices("url", "video_url", "videoUrl"))
    msg: Optional[str] = Field(default=None, validation_alias=AliasChoices("msg", "error", "message"))


class RenderWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_type: str = Field(default="", validation_alias=AliasChoices("event_type", "eventType"))
    event_data: RenderEventData = Field(
        default_factory=RenderEventData, validation_alias=AliasChoices("event_data", "eventData")
    )


class CaptionWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    project_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("projectId", "id"))
    status: Optional[str] = None
    url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("directUrl", "downloadUrl", "videoUrl")
    )
    error: Optional[str] = Field(default=None, validation_alias=AliasChoices("error", "message"))


# --- Receiver ---


class VideoWebhookReceiver:
    """Finishes or fails video Outputs from provider callbacks and follow-up jobs."""

    def __init__(self, store, storage, transcriber, questions, aggregator, scheduler,
                 post_processor=None, captioner=None, tagger=None,
                 config: Optional[VideoConfig] = None):
        self.store = store
        self.storage = storage
        self.transcriber = transcriber
        self.questions = questions
        self.aggregator = aggregator
        self.scheduler = scheduler
        self.post_processor = post_processor
        self.captioner = captioner
        self.tagger = tagger
        self.config = config or VideoConfig()

    def _find(self, field: CorrelationField, correlation_id: str) -> Optional[Dict[str, Any]]:
        output = self.store.find_processing_by(MediaKind.VIDEO, field.value, correlation_id)
        if output is None:
            logger.warning(
                "No processing video holds %s=%s; ignoring (duplicate, late or unknown)",
                field.value, correlation_id,
            )
        return output

    def handle_render_success(self, render_job_id: str, video_url: str) -> bool:
        """Route a finished render to captioning or straight to finalization."""
        output = self._find(CorrelationField.RENDER, render_job_id)
        if output is None:
            return False

        if self.captioner is not None and self.config.captions_enabled and output.get("captionsEnabled"):
            submission = self.store.get_submission(output["submissionId"])
            try:
                caption_job_id = self.captioner.submit(
                    video_url, output.get("title") or "Video", submission.get("language") or "ENGLISH"
                )
            except ProviderError:
                logger.warning(
                    "Captioning request failed for video %s; continuing without captions",
                    output["id"], exc_info=True,
                )
            else:
                self.store.update_output(
                    MediaKind.VIDEO, output["id"], require_status=OutputStatus.PROCESSING,
                    captionJobId=caption_job_id,
                )
                logger.info("Video %s sent for captioning (caption job %s)", output["id"], caption_job_id)
                return True

        self._enqueue_finalization(output, video_url)
        return True

    def handle_caption_success(self, caption_job_id: str, video_url: str) -> bool:
        output = self._find(CorrelationField.CAPTION, caption_job_id)
        if output is None:
            return False
        self._enqueue_finalization(output, video_url)
        return True

    def handle_failure(
        self,
        correlation_id: str,
        error_message: str,
        field: CorrelationField = CorrelationField.RENDER,
    ) -> bool:
        """Fail the in-flight Output holding ``correlation_id``.

        Returns:
            True if this call moved the Output to FAILED.
        """
        output = self._find(field, correlation_id)
        if output is None:
            return False
        changed = self.store.transition_if(
            MediaKind.VIDEO, output["id"], Event.FAIL,
            match={field.value: correlation_id}, error=error_message,
        )
        if not changed:
            logger.info("Video %s already resolved; failure webhook ignored", output["id"])
            return False
        logger.error("Video %s failed via webhook: %s", output["id"], error_message)
        self.aggregator.recompute(output["submissionId"])
        return True

    def run_post_processing(
        self, output_id: str, render_job_id: str, source_url: str, ctx: Optional[JobContext] = None
    ) -> bool:
        """Apply bumpers/music, then hand off to the completion job."""
        ctx = ctx or JobContext()
        output = self._find(CorrelationField.RENDER, render_job_id)
        if output is None or output["id"] != output_id:
            return False

        try:
            submission = self.store.get_submission(output["submissionId"])
            processed_url = self.post_processor.process(output, submission, source_url)
        except Exception as e:
            self._fail_if_final(output, render_job_id, e, ctx, "Video post-processing failed")
            raise

        self.scheduler.enqueue(VideoCompletionJob(render_job_id=render_job_id, video_url=processed_url))
        return True

    def handle_completion(
        self, render_job_id: str, result_url: str, ctx: Optional[JobContext] = None
    ) -> bool:
        """Persist the final video, transcribe it and complete the Output.

        Transient errors on a non-final attempt leave the Output PROCESSING so
        the queue can redeliver; on the final attempt (or for non-retryable
        errors) the Output is failed before the error propagates.

        Returns:
            True if this call completed the Output.
        """
        ctx = ctx or JobContext()
        output = self._find(CorrelationField.RENDER, render_job_id)
        if output is None:
            return False

        try:
            values = self._finalize(output, result_url)
        except Exception as e:
            self._fail_if_final(output, render_job_id, e, ctx, "Video completion failed")
            raise

        completed = self.store.transition_if(
            MediaKind.VIDEO, output["id"], Event.COMPLETE,
            match={CorrelationField.RENDER.value: render_job_id}, **values,
        )
        if not completed:
            logger.warning("Video %s resolved concurrently; completion discarded", output["id"])
            return False

        logger.info("Video %s completed (%ss)", output["id"], values["duration"])
        if self.tagger is not None:
            run_best_effort("auto-tagging", self.tagger.tag, MediaKind.VIDEO, output["id"])
        self.aggregator.recompute(output["submissionId"])
        return True

    # --- internals ---

    def _enqueue_finalization(self, output: Dict[str, Any], video_url: str) -> None:
        if self.post_processor is not None and self.post_processor.needs_processing(output):
            payload = PostProcessVideoJob(
                output_id=output["id"],
                submission_id=output["submissionId"],
                render_job_id=output["renderJobId"],
                source_url=video_url,
            )
        else:
            payload = VideoCompletionJob(render_job_id=output["renderJobId"], video_url=video_url)
        self.scheduler.enqueue(payload)

    def _finalize(self, output: Dict[str, Any], result_url: str) -> Dict[str, Any]:
        submission = self.store.get_submission(output["submissionId"])
        language = submission.get("language") or "ENGLISH"

        if self.storage.owns(result_url):
            video_url = result_url
        else:
            key = artifact_key(submission["organizationId"], "videos", submission["id"], "mp4")
            video_url = self.storage.put_from_url(key, result_url, "video/mp4")

        try:
            transcript = self.transcriber.transcribe(video_url, language)
        except PipelineError:
            logger.warning("Transcription failed for video %s; using fallback", output["id"], exc_info=True)
            transcript = Transcript(text=TRANSCRIPT_UNAVAILABLE)

        if transcript.duration:
            duration = math.ceil(transcript.duration)
        elif transcript.words:
            duration = math.ceil(transcript.words[-1].end)
        else:
            duration = self.config.fallback_duration_s

        questions = None
        if self.config.generate_questions and output.get("generateQuestions") and transcript.words:
            questions = run_best_effort(
                "question generation", self.questions.generate,
                transcript.text, language, words=transcript.words, duration=duration,
                count=self.config.question_count,
            )

        return {
            "videoUrl": video_url,
            "duration": duration,
            "transcript": transcript.text,
            "wordTimings": [w.to_dict() for w in transcript.words],
            "questions": questions,
        }

    def _fail_if_final(
        self, output: Dict[str, Any], render_job_id: str, exc: BaseException, ctx: JobContext, prefix: str
    ) -> None:
        if is_retryable(exc) and not ctx.is_final_attempt:
            logger.warning(
                "%s for video %s (attempt %d/%d), will retry: %s",
                prefix, output["id"], ctx.attempt, ctx.max_attempts, exc,
            )
            return
        changed = self.store.transition_if(
            MediaKind.VIDEO, output["id"], Event.FAIL,
            match={CorrelationField.RENDER.value: render_job_id},
            error=f"{prefix}: {exc}",
        )
        if changed:
            logger.error("%s for video %s: %s", prefix, output["id"], exc)
            run_best_effort("submission status", self.aggregator.recompute, output["submissionId"])


# --- HTTP payload handlers ---


class RenderWebhookHandler:
    """Maps render provider events onto the receiver."""

    def __init__(self, receiver: VideoWebhookReceiver):
        self.receiver = receiver

    def handle(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            event = RenderWebhookEvent.model_validate(data)
        except ValidationError as e:
            logger.warning("Malformed render webhook: %s", e)
            return {"success": False, "error": "Malformed payload"}

        render_job_id = event.event_data.video_id
        if not render_job_id:
            logger.warning("Render webhook without video id (event %s)", event.event_type)
            return {"success": False, "error": "Missing video_id"}

        if event.event_type == RENDER_SUCCESS:
            if not event.event_data.url:
                handled = self.receiver.handle_failure(
                    render_job_id, "Render succeeded but no video URL was provided"
                )
            else:
                handled = self.receiver.handle_render_success(render_job_id, event.event_data.url)
        elif event.event_type == RENDER_FAILURE:
            message = event.event_data.msg or "Unknown error"
            handled = self.receiver.handle_failure(render_job_id, f"Video rendering failed: {message}")
        else:
            logger.info("Ignoring render event %s for %s", event.event_type, render_job_id)
            return {"success": True, "ignored": True}

        return {"success": True, "handled": handled}


class CaptionWebhookHandler:
    """Maps captioning provider callbacks onto the receiver."""

    def __init__(self, receiver: VideoWebhookReceiver):
        self.receiver = receiver

    def handle(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            event = CaptionWebhookEvent.model_validate(data)
        except ValidationError as e:
            logger.warning("Malformed caption webhook: %s", e)
            return {"success": False, "error": "Malformed payload"}

        if not event.project_id:
            logger.warning("Caption webhook without project id")
            return {"success": False, "error": "Missing projectId"}

        status = (event.status or "").lower()
        if event.url:
            handled = self.receiver.handle_caption_success(event.project_id, event.url)
        elif status in ("failed", "completed") or event.error:
            # "completed" without any video URL cannot be finalized either
            handled = self.receiver.handle_failure(
                event.project_id,
                f"Captioning failed: {event.error or 'Unknown error'}",
                field=CorrelationField.CAPTION,
            )
        else:
            logger.info("Ignoring caption status %r for %s", event.status, event.project_id)
            return {"success": True, "ignored": True}

        return {"success": True, "handled": handled}
