"""Submission lifecycle operations shared by the HTTP API and the CLI."""

import logging
from typing import Any, Dict, Iterable, Literal, Optional

from .errors import InvalidTransitionError, PreconditionError
from .queue.models import GenerateMediaJob, GenerateOutputJob, GenerateScriptJob
from .state import Event, MediaKind, OutputStatus

logger = logging.getLogger(__name__)

Mode = Literal["script", "full"]


class SubmissionService:
    """Creates Submissions with their Outputs and enqueues stage jobs."""

    def __init__(self, store, scheduler, services, aggregator):
        self.store = store
        self.scheduler = scheduler
        self.services = services
        self.aggregator = aggregator

    def create(
        self,
        article_id: str,
        kinds: Iterable[MediaKind],
        language: str = "ENGLISH",
        mode: Mode = "script",
        customization: Optional[Dict[MediaKind, Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Create a Submission with one PENDING Output per kind and enqueue their first jobs.

        ``script`` mode stops every Output at SCRIPT_READY for review;
        ``full`` mode runs script and media back to back.
        """
        kinds = list(dict.fromkeys(MediaKind(k) for k in kinds))
        if not kinds:
            raise PreconditionError("A submission needs at least one output kind")
        customization = {MediaKind(k): v for k, v in (customization or {}).items()}

        submission = self.store.create_submission(article_id, language=language)
        outputs = []
        for kind in kinds:
            output = self.store.create_output(kind, submission["id"])
            if mode == "full":
                payload = GenerateOutputJob(
                    kind=kind,
                    output_id=output["id"],
                    submission_id=submission["id"],
                    article_id=article_id,
                    language=language,
                    customization=customization.get(kind, {}),
                )
            else:
                payload = GenerateScriptJob(
                    kind=kind,
                    output_id=output["id"],
                    submission_id=submission["id"],
                    article_id=article_id,
                    language=language,
                )
            handle = self.scheduler.enqueue(payload)
            outputs.append({"kind": kind.value, "id": output["id"], "jobId": handle.job_id})

        logger.info("Submission %s created with %d outputs (%s mode)", submission["id"], len(outputs), mode)
        return {"id": submission["id"], "status": submission["status"], "outputs": outputs}

    def get(self, submission_id: str) -> Dict[str, Any]:
        submission = self.store.get_submission(submission_id)
        submission["outputs"] = [
            {"kind": kind.value, **output} for kind, output in self.store.list_outputs(submission_id)
        ]
        return submission

    def request_media(
        self, kind: MediaKind, output_id: str, customization: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Enqueue the media phase for a reviewed script."""
        kind = MediaKind(kind)
        output = self.store.get_output(kind, output_id)
        status = OutputStatus(output["status"])
        if status != OutputStatus.SCRIPT_READY:
            raise InvalidTransitionError(status.value, Event.START_MEDIA.value)
        handle = self.scheduler.enqueue(
            GenerateMediaJob(
                kind=kind,
                output_id=output_id,
                submission_id=output["submissionId"],
                customization=customization or {},
            )
        )
        return {"id": output_id, "kind": kind.value, "jobId": handle.job_id}

    def update_script(self, kind: MediaKind, output_id: str, script: str) -> Dict[str, Any]:
        return self.services[MediaKind(kind)].update_script(output_id, script)

    def regenerate(
        self,
        kind: MediaKind,
        output_id: str,
        script: Optional[str] = None,
        customization: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Reopen a finished Output and enqueue the phase it returned to."""
        kind = MediaKind(kind)
        output = self.services[kind].regenerate(output_id, script)
        self.aggregator.recompute(output["submissionId"])

        if OutputStatus(output["status"]) == OutputStatus.SCRIPT_READY:
            return self.request_media(kind, output_id, customization)

        submission = self.store.get_submission(output["submissionId"])
        handle = self.scheduler.enqueue(
            GenerateScriptJob(
                kind=kind,
                output_id=output_id,
                submission_id=submission["id"],
                article_id=submission["articleId"],
                language=submission["language"],
            )
        )
        return {"id": output_id, "kind": kind.value, "jobId": handle.job_id}
