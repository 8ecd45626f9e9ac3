"""Tests for OutputStore conditional writes and the submission aggregator."""

from datetime import timedelta

import pytest

from media_pipeline.db_models import utcnow
from media_pipeline.errors import (
    CorrelationConflictError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
)
from media_pipeline.state import Event, MediaKind, OutputStatus, SubmissionStatus


@pytest.fixture
def store(container):
    return container.store


def test_create_submission_copies_organization(store, submission):
    article, sub, outputs = submission(MediaKind.AUDIO)
    assert sub["organizationId"] == "org-1"
    assert sub["articleId"] == article["id"]
    assert sub["status"] == SubmissionStatus.PENDING
    assert outputs[MediaKind.AUDIO]["status"] == OutputStatus.PENDING


def test_missing_rows_raise_not_found(store):
    with pytest.raises(NotFoundError):
        store.get_output(MediaKind.VIDEO, "nope")
    with pytest.raises(NotFoundError):
        store.create_submission("no-article")


def test_list_outputs_spans_kinds(store, submission):
    _, sub, _ = submission(MediaKind.AUDIO, MediaKind.QUIZ, MediaKind.VIDEO)
    kinds = sorted(kind.value for kind, _ in store.list_outputs(sub["id"]))
    assert kinds == ["audio", "quiz", "video"]
    assert store.list_output_statuses(sub["id"]) == [OutputStatus.PENDING] * 3


def test_transition_output_clears_error_outside_failure(store, submission):
    _, _, outputs = submission(MediaKind.AUDIO)
    output_id = outputs[MediaKind.AUDIO]["id"]

    store.transition_output(MediaKind.AUDIO, output_id, Event.START_SCRIPT)
    failed = store.transition_output(MediaKind.AUDIO, output_id, Event.FAIL, error="boom")
    assert failed["status"] == OutputStatus.FAILED
    assert failed["error"] == "boom"

    reopened = store.transition_output(MediaKind.AUDIO, output_id, Event.REGENERATE_SCRIPT)
    assert reopened["status"] == OutputStatus.PENDING
    assert reopened["error"] is None


def test_failure_without_message_gets_default(store, submission):
    _, _, outputs = submission(MediaKind.AUDIO)
    failed = store.transition_output(MediaKind.AUDIO, outputs[MediaKind.AUDIO]["id"], Event.FAIL)
    assert failed["error"] == "Unknown error"


def test_transition_output_rejects_illegal_event(store, submission):
    _, _, outputs = submission(MediaKind.AUDIO)
    with pytest.raises(InvalidTransitionError):
        store.transition_output(MediaKind.AUDIO, outputs[MediaKind.AUDIO]["id"], Event.COMPLETE)


def test_update_output_requires_status(store, submission):
    _, _, outputs = submission(MediaKind.AUDIO)
    output_id = outputs[MediaKind.AUDIO]["id"]
    with pytest.raises(StaleStateError):
        store.update_output(MediaKind.AUDIO, output_id, require_status=OutputStatus.SCRIPT_READY, script="x")
    with pytest.raises(ValueError):
        store.update_output(MediaKind.AUDIO, output_id, status=OutputStatus.COMPLETED)


def test_transition_if_respects_correlation_match(store, submission):
    _, _, outputs = submission(MediaKind.VIDEO)
    output_id = outputs[MediaKind.VIDEO]["id"]
    store.transition_output(MediaKind.VIDEO, output_id, Event.START_MEDIA, renderJobId="r-1")

    assert not store.transition_if(MediaKind.VIDEO, output_id, Event.FAIL, match={"renderJobId": "r-2"})
    assert store.transition_if(MediaKind.VIDEO, output_id, Event.FAIL, match={"renderJobId": "r-1"}, error="x")
    # Second writer loses
    assert not store.transition_if(MediaKind.VIDEO, output_id, Event.FAIL, match={"renderJobId": "r-1"})


def test_transition_if_matches_missing_correlation_id(store, submission):
    _, _, outputs = submission(MediaKind.VIDEO)
    output_id = outputs[MediaKind.VIDEO]["id"]
    store.transition_output(MediaKind.VIDEO, output_id, Event.START_MEDIA)
    assert store.transition_if(
        MediaKind.VIDEO, output_id, Event.TIME_OUT, match={"renderJobId": None}, error="late"
    )


def test_transition_if_stale_before(store, submission):
    _, _, outputs = submission(MediaKind.AUDIO)
    output_id = outputs[MediaKind.AUDIO]["id"]
    store.transition_output(MediaKind.AUDIO, output_id, Event.START_SCRIPT)

    assert not store.transition_if(
        MediaKind.AUDIO, output_id, Event.TIME_OUT, stale_before=utcnow() - timedelta(minutes=30)
    )
    assert store.transition_if(
        MediaKind.AUDIO, output_id, Event.TIME_OUT, stale_before=utcnow() + timedelta(minutes=1)
    )


def test_in_flight_correlation_id_is_unique(store, submission):
    _, _, first = submission(MediaKind.VIDEO)
    _, _, second = submission(MediaKind.VIDEO)
    a = first[MediaKind.VIDEO]["id"]
    b = second[MediaKind.VIDEO]["id"]
    store.transition_output(MediaKind.VIDEO, a, Event.START_MEDIA, renderJobId="shared")
    store.transition_output(MediaKind.VIDEO, b, Event.START_MEDIA)

    with pytest.raises(CorrelationConflictError):
        store.update_output(MediaKind.VIDEO, b, renderJobId="shared")

    # Once the first is finished the id may be reused
    store.transition_output(MediaKind.VIDEO, a, Event.COMPLETE)
    store.update_output(MediaKind.VIDEO, b, renderJobId="shared")
    assert store.find_processing_by(MediaKind.VIDEO, "renderJobId", "shared")["id"] == b


def test_find_stale(store, submission):
    _, _, outputs = submission(MediaKind.AUDIO, MediaKind.QUIZ)
    audio_id = outputs[MediaKind.AUDIO]["id"]
    store.transition_output(MediaKind.AUDIO, audio_id, Event.START_SCRIPT)
    store.update_output(MediaKind.AUDIO, audio_id, updatedAt=utcnow() - timedelta(hours=1))

    stale = store.find_stale(MediaKind.AUDIO, utcnow() - timedelta(minutes=30))
    assert [o["id"] for o in stale] == [audio_id]
    # PENDING outputs are never stale
    assert store.find_stale(MediaKind.QUIZ, utcnow() + timedelta(hours=1)) == []


def test_aggregator_persists_derived_status(container, submission):
    _, sub, outputs = submission(MediaKind.AUDIO, MediaKind.QUIZ)
    store = container.store
    for kind, output in outputs.items():
        store.transition_output(kind, output["id"], Event.START_SCRIPT)
    assert container.aggregator.recompute(sub["id"]) == SubmissionStatus.PROCESSING

    store.transition_output(MediaKind.AUDIO, outputs[MediaKind.AUDIO]["id"], Event.FAIL, error="x")
    store.transition_output(MediaKind.QUIZ, outputs[MediaKind.QUIZ]["id"], Event.SCRIPT_DONE, script="s")
    assert container.aggregator.recompute(sub["id"]) == SubmissionStatus.PARTIAL_FAILURE
    assert store.get_submission(sub["id"])["status"] == SubmissionStatus.PARTIAL_FAILURE
