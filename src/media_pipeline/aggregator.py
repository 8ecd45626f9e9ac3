"""Submission status derived from child Output statuses."""

import logging
from typing import Iterable

from .state import OutputStatus, SubmissionStatus

logger = logging.getLogger(__name__)


def derive_status(statuses: Iterable[OutputStatus]) -> SubmissionStatus:
    """Apply the submission precedence rules.

    1. No outputs                           -> PENDING
    2. All COMPLETED                        -> COMPLETED
    3. Any PROCESSING or PENDING            -> PROCESSING
    4. Any FAILED: all FAILED               -> FAILED
                   otherwise                -> PARTIAL_FAILURE
    5. Remaining mix of COMPLETED and
       SCRIPT_READY (scripts under review)  -> PARTIAL_COMPLETE
    """
    statuses = [OutputStatus(s) for s in statuses]
    if not statuses:
        return SubmissionStatus.PENDING
    if all(s == OutputStatus.COMPLETED for s in statuses):
        return SubmissionStatus.COMPLETED
    if any(s in (OutputStatus.PROCESSING, OutputStatus.PENDING) for s in statuses):
        return SubmissionStatus.PROCESSING
    if any(s == OutputStatus.FAILED for s in statuses):
        if all(s == OutputStatus.FAILED for s in statuses):
            return SubmissionStatus.FAILED
        return SubmissionStatus.PARTIAL_FAILURE
    return SubmissionStatus.PARTIAL_COMPLETE


class SubmissionStatusAggregator:
    """Recomputes and persists a Submission's derived status."""

    def __init__(self, store):
        self.store = store

    def recompute(self, submission_id: str) -> SubmissionStatus:
        """Persist and return the derived status.

        Raises:
            NotFoundError: If the submission does not exist.
        """
        submission = self.store.get_submission(submission_id)
        status = derive_status(self.store.list_output_statuses(submission_id))
        if SubmissionStatus(submission["status"]) != status:
            self.store.set_submission_status(submission_id, status)
            logger.info(
                "Submission %s: %s -> %s", submission_id, submission["status"].value, status.value
            )
        return status
