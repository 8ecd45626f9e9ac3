"""Tests for the Output state machine and the derived Submission status."""

import pytest

from media_pipeline.aggregator import derive_status
from media_pipeline.errors import ErrorKind, InvalidTransitionError
from media_pipeline.state import Event, OutputStatus, SubmissionStatus, allowed_events, transition

P = OutputStatus.PENDING
S = OutputStatus.SCRIPT_READY
R = OutputStatus.PROCESSING
C = OutputStatus.COMPLETED
F = OutputStatus.FAILED


class TestTransition:
    @pytest.mark.parametrize(
        "current,event,expected",
        [
            (P, Event.START_SCRIPT, R),
            (R, Event.SCRIPT_DONE, S),
            (S, Event.START_MEDIA, R),
            (P, Event.START_MEDIA, R),
            (R, Event.COMPLETE, C),
            (R, Event.TIME_OUT, F),
            (F, Event.RETRY, R),
            (C, Event.REGENERATE_MEDIA, S),
            (F, Event.REGENERATE_SCRIPT, P),
        ],
    )
    def test_legal_edges(self, current, event, expected):
        assert transition(current, event) == expected

    @pytest.mark.parametrize("current", [P, S, R])
    def test_fail_from_every_active_status(self, current):
        assert transition(current, Event.FAIL) == F

    def test_completed_is_not_reopened_by_retry(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(C, Event.RETRY)
        assert exc_info.value.current == "COMPLETED"
        assert exc_info.value.event == "RETRY"
        assert exc_info.value.kind == ErrorKind.PRECONDITION
        assert not exc_info.value.retryable

    def test_script_ready_cannot_complete_directly(self):
        with pytest.raises(InvalidTransitionError):
            transition(S, Event.COMPLETE)

    def test_timeout_only_applies_to_processing(self):
        with pytest.raises(InvalidTransitionError):
            transition(P, Event.TIME_OUT)

    def test_accepts_plain_strings(self):
        assert transition("PENDING", "START_SCRIPT") == R

    def test_allowed_events(self):
        assert allowed_events(F) == [Event.RETRY, Event.REGENERATE_MEDIA, Event.REGENERATE_SCRIPT]
        assert Event.FAIL not in allowed_events(C)


class TestDeriveStatus:
    def test_no_outputs_is_pending(self):
        assert derive_status([]) == SubmissionStatus.PENDING

    def test_all_completed(self):
        assert derive_status([C, C]) == SubmissionStatus.COMPLETED

    def test_any_in_flight_wins_over_failure(self):
        assert derive_status([F, R]) == SubmissionStatus.PROCESSING
        assert derive_status([C, P]) == SubmissionStatus.PROCESSING

    def test_all_failed(self):
        assert derive_status([F, F]) == SubmissionStatus.FAILED

    def test_some_failed(self):
        assert derive_status([F, C]) == SubmissionStatus.PARTIAL_FAILURE
        assert derive_status([F, S]) == SubmissionStatus.PARTIAL_FAILURE

    def test_scripts_under_review(self):
        assert derive_status([S, S]) == SubmissionStatus.PARTIAL_COMPLETE
        assert derive_status([S, C]) == SubmissionStatus.PARTIAL_COMPLETE
