"""Routes claimed jobs to stage services and webhook receivers.

The worker calls ``process_job`` for every claimed job. Whatever it raises
goes back to the worker, which asks the error whether the queue should
redeliver. Stage services record failures on the Output themselves; the
dispatcher only refreshes the parent Submission's derived status.
"""

import logging
from typing import Any, Dict, Mapping, assert_never

from pydantic import ValidationError

from .errors import PreconditionError
from .queue.models import (
    GenerateMediaJob,
    GenerateOutputJob,
    GenerateScriptJob,
    JobContext,
    JobItem,
    JobPayload,
    PostProcessVideoJob,
    VideoCompletionJob,
)
from .side_effects import run_best_effort
from .state import MediaKind

logger = logging.getLogger(__name__)


class Dispatcher:
    def __init__(self, services: Mapping[MediaKind, Any], receiver, aggregator):
        self.services = dict(services)
        self.receiver = receiver
        self.aggregator = aggregator

    def process_job(self, job: JobItem) -> Dict[str, Any]:
        """Run one job and return a small result dict for the queue."""
        try:
            payload = job.typed_payload()
        except ValidationError as e:
            raise PreconditionError(f"Malformed {job.job_type} payload: {e.error_count()} errors") from e

        ctx = job.context()
        logger.info(
            "Job %s started: %s (attempt %d/%d)", job.job_id, job.job_type, ctx.attempt, ctx.max_attempts
        )
        try:
            result = self._route(payload, ctx)
        except Exception as e:
            logger.error(
                "Job %s (%s) failed on attempt %d/%d: %s",
                job.job_id, job.job_type, ctx.attempt, ctx.max_attempts, e,
            )
            submission_id = getattr(payload, "submission_id", None)
            if submission_id:
                run_best_effort("submission status", self.aggregator.recompute, submission_id)
            raise
        return result

    def _route(self, payload: JobPayload, ctx: JobContext) -> Dict[str, Any]:
        match payload:
            case GenerateScriptJob():
                output = self._service(payload.kind).generate_script(
                    payload.article_id, payload.output_id, payload.language, ctx
                )
                return self._stage_result(payload.submission_id, output)
            case GenerateMediaJob():
                output = self._service(payload.kind).generate_media_from_script(
                    payload.output_id, payload.customization, ctx
                )
                return self._stage_result(payload.submission_id, output)
            case GenerateOutputJob():
                output = self._service(payload.kind).generate(
                    payload.article_id, payload.output_id, payload.language, payload.customization, ctx
                )
                return self._stage_result(payload.submission_id, output)
            case PostProcessVideoJob():
                handled = self.receiver.run_post_processing(
                    payload.output_id, payload.render_job_id, payload.source_url, ctx
                )
                return {"renderJobId": payload.render_job_id, "handled": handled}
            case VideoCompletionJob():
                handled = self.receiver.handle_completion(payload.render_job_id, payload.video_url, ctx)
                if not handled:
                    logger.warning("Completion for render job %s had no effect", payload.render_job_id)
                return {"renderJobId": payload.render_job_id, "handled": handled}
            case _:
                assert_never(payload)

    def _service(self, kind: MediaKind):
        try:
            return self.services[MediaKind(kind)]
        except KeyError:
            raise PreconditionError(f"No service registered for {kind}") from None

    def _stage_result(self, submission_id: str, output: Dict[str, Any]) -> Dict[str, Any]:
        # Async video media leaves the Output PROCESSING; the recompute
        # still reflects it so a reviewed Submission shows work in flight.
        self.aggregator.recompute(submission_id)
        status = output["status"]
        return {"outputId": output["id"], "status": getattr(status, "value", status)}
