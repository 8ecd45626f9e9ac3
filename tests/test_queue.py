"""Unit tests for queue system.

Tests cover:
- Enqueue/dequeue and payload deduplication
- Backoff-delayed redelivery and exhausted attempts
- Removal, pruning and crash recovery
"""

from datetime import datetime, timedelta

import pytest

from media_pipeline.queue import (
    BackoffPolicy,
    BackoffType,
    GenerateMediaJob,
    GenerateScriptJob,
    JobOptions,
    JobStatus,
    PostProcessVideoJob,
    SQLiteQueue,
    VideoCompletionJob,
    compute_payload_hash,
    is_video_job,
    parse_payload,
)
from media_pipeline.queue.sqlite_backend import CRASHED_WORKER_ERROR
from media_pipeline.state import MediaKind


class Clock:
    """Manually advanced time source."""

    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def queue(tmp_path, clock):
    q = SQLiteQueue(str(tmp_path / "queue.db"), clock=clock)
    yield q
    q.close()


def script_job(output_id="out-1"):
    return GenerateScriptJob(
        kind=MediaKind.AUDIO, output_id=output_id, submission_id="sub-1", article_id="art-1"
    )


class TestPayloads:
    def test_parse_payload_round_trips_variant(self):
        payload = parse_payload(script_job().model_dump(mode="json"))
        assert isinstance(payload, GenerateScriptJob)
        assert payload.kind == MediaKind.AUDIO

    def test_unknown_type_is_rejected(self):
        with pytest.raises(ValueError):
            parse_payload({"type": "mystery", "output_id": "x"})

    def test_video_jobs_detected(self):
        assert is_video_job(VideoCompletionJob(render_job_id="r", video_url="u"))
        assert is_video_job(
            GenerateMediaJob(kind=MediaKind.VIDEO, output_id="o", submission_id="s")
        )
        assert not is_video_job(
            GenerateMediaJob(kind=MediaKind.AUDIO, output_id="o", submission_id="s")
        )
        assert not is_video_job(script_job())

    def test_payload_hash_is_order_independent(self):
        a = {"render_job_id": "r", "video_url": "u"}
        b = {"video_url": "u", "render_job_id": "r"}
        assert compute_payload_hash("x", a) == compute_payload_hash("x", b)
        assert compute_payload_hash("x", a) != compute_payload_hash("y", a)


class TestBackoff:
    def test_exponential(self):
        policy = BackoffPolicy(type=BackoffType.EXPONENTIAL, delay_ms=2000)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_fixed(self):
        policy = BackoffPolicy(type=BackoffType.FIXED, delay_ms=500)
        assert policy.delay_for(3) == 0.5

    def test_no_delay_before_first_failure(self):
        assert BackoffPolicy().delay_for(0) == 0.0


class TestEnqueueDequeue:
    def test_enqueue_and_dequeue(self, queue):
        handle = queue.enqueue(script_job())
        assert not handle.deduplicated

        job = queue.dequeue("worker-1")
        assert job is not None
        assert job.job_id == handle.job_id
        assert job.status == JobStatus.RUNNING.value
        assert job.attempt == 1
        assert isinstance(job.typed_payload(), GenerateScriptJob)

        assert queue.dequeue("worker-2") is None

    def test_fifo_order(self, queue, clock):
        first = queue.enqueue(script_job("a"))
        clock.advance(1)
        queue.enqueue(script_job("b"))
        assert queue.dequeue("w").job_id == first.job_id

    def test_identical_in_flight_payload_is_deduplicated(self, queue):
        payload = VideoCompletionJob(render_job_id="render-1", video_url="https://cdn/x.mp4")
        first = queue.enqueue(payload)
        second = queue.enqueue(payload)
        assert second.deduplicated
        assert second.job_id == first.job_id
        assert queue.counts()["pending"] == 1

        # Still deduplicated while running
        queue.dequeue("w")
        assert queue.enqueue(payload).deduplicated

    def test_finished_payload_can_be_enqueued_again(self, queue):
        payload = script_job()
        first = queue.enqueue(payload)
        queue.dequeue("w")
        queue.ack_success(first.job_id, {"status": "SCRIPT_READY"})

        again = queue.enqueue(payload)
        assert not again.deduplicated
        assert again.job_id != first.job_id

    def test_dedupe_can_be_disabled(self, queue):
        options = JobOptions(dedupe=False)
        queue.enqueue(script_job(), options)
        assert not queue.enqueue(script_job(), options).deduplicated

    def test_ack_success_stores_result(self, queue):
        handle = queue.enqueue(script_job())
        queue.dequeue("w")
        queue.ack_success(handle.job_id, {"outputId": "out-1", "status": "SCRIPT_READY"})

        view = queue.get_status(handle.job_id)
        assert view.state == JobStatus.COMPLETED
        assert view.result == {"outputId": "out-1", "status": "SCRIPT_READY"}
        assert view.finished_at is not None


class TestRetries:
    def test_retry_waits_for_backoff(self, queue, clock):
        options = JobOptions(attempts=3, backoff=BackoffPolicy(type=BackoffType.EXPONENTIAL, delay_ms=2000))
        handle = queue.enqueue(script_job(), options)
        queue.dequeue("w")

        assert queue.ack_fail(handle.job_id, "TransientProviderError: 503", retry=True) == JobStatus.PENDING
        assert queue.dequeue("w") is None

        clock.advance(2)
        job = queue.dequeue("w")
        assert job.job_id == handle.job_id
        assert job.attempt == 2
        assert job.context().is_redelivery
        assert not job.context().is_final_attempt

        queue.ack_fail(handle.job_id, "again", retry=True)
        clock.advance(3)
        assert queue.dequeue("w") is None  # second delay is 4s
        clock.advance(1)
        assert queue.dequeue("w").context().is_final_attempt

    def test_attempts_exhausted(self, queue):
        options = JobOptions(attempts=2, backoff=BackoffPolicy(delay_ms=0))
        handle = queue.enqueue(script_job(), options)
        queue.dequeue("w")
        assert queue.ack_fail(handle.job_id, "first", retry=True) == JobStatus.PENDING
        queue.dequeue("w")
        assert queue.ack_fail(handle.job_id, "second", retry=True) == JobStatus.FAILED

        view = queue.get_status(handle.job_id)
        assert view.state == JobStatus.FAILED
        assert view.attempts_made == 2
        assert view.failed_reason == "second"

    def test_non_retryable_is_terminal(self, queue):
        handle = queue.enqueue(script_job())
        queue.dequeue("w")
        assert queue.ack_fail(handle.job_id, "PreconditionError: no script", retry=False) == JobStatus.FAILED
        assert queue.get_status(handle.job_id).attempts_made == 1

    def test_error_is_truncated(self, queue):
        handle = queue.enqueue(script_job())
        queue.dequeue("w")
        queue.ack_fail(handle.job_id, "x" * 2000, retry=False)
        assert len(queue.get_status(handle.job_id).failed_reason) == 500


class TestManagement:
    def test_remove(self, queue):
        handle = queue.enqueue(script_job())
        assert queue.remove(handle.job_id)
        assert queue.get_status(handle.job_id) is None
        assert not queue.remove(handle.job_id)

    def test_running_job_cannot_be_removed(self, queue):
        handle = queue.enqueue(script_job())
        queue.dequeue("w")
        assert not queue.remove(handle.job_id)
        assert queue.get_status(handle.job_id).state == JobStatus.RUNNING

    def test_prune_by_count(self, queue, clock):
        ids = []
        for i in range(3):
            handle = queue.enqueue(script_job(f"out-{i}"))
            queue.dequeue("w")
            queue.ack_success(handle.job_id)
            ids.append(handle.job_id)
            clock.advance(1)

        removed = queue.prune(keep_completed=1, completed_max_age_s=3600, keep_failed=10, failed_max_age_s=3600)
        assert removed == 2
        assert queue.get_status(ids[-1]) is not None
        assert queue.get_status(ids[0]) is None

    def test_prune_by_age_keeps_failed_longer(self, queue, clock):
        done = queue.enqueue(script_job("a"))
        queue.dequeue("w")
        queue.ack_success(done.job_id)
        failed = queue.enqueue(script_job("b"))
        queue.dequeue("w")
        queue.ack_fail(failed.job_id, "boom", retry=False)

        clock.advance(2 * 3600)
        removed = queue.prune(
            keep_completed=100, completed_max_age_s=3600, keep_failed=100, failed_max_age_s=7 * 24 * 3600
        )
        assert removed == 1
        assert queue.get_status(done.job_id) is None
        assert queue.get_status(failed.job_id) is not None

    def test_prune_leaves_pending_alone(self, queue):
        handle = queue.enqueue(script_job())
        assert queue.prune(0, 1, 0, 1) == 0
        assert queue.get_status(handle.job_id).state == JobStatus.PENDING

    def test_reset_stale_running(self, queue, clock):
        handle = queue.enqueue(
            PostProcessVideoJob(output_id="o", submission_id="s", render_job_id="r", source_url="u")
        )
        queue.dequeue("w")
        clock.advance(60)
        assert queue.reset_stale_running(timeout_s=7200) == 0

        clock.advance(11 * 60)  # heartbeat older than 10 minutes
        assert queue.reset_stale_running(timeout_s=7200) == 1

        job = queue.dequeue("w2")
        assert job.job_id == handle.job_id
        # The lost attempt counts against the budget
        assert job.attempts_made == 1
        assert job.context().is_redelivery
        assert job.context().last_error == CRASHED_WORKER_ERROR

    def test_stale_job_without_attempts_left_fails(self, queue, clock):
        handle = queue.enqueue(script_job(), JobOptions(attempts=1))
        queue.dequeue("w")
        clock.advance(11 * 60)

        assert queue.reset_stale_running() == 1

        view = queue.get_status(handle.job_id)
        assert view.state == JobStatus.FAILED
        assert view.attempts_made == 1
        assert view.failed_reason == CRASHED_WORKER_ERROR
        assert queue.dequeue("w2") is None

    def test_heartbeat_keeps_job_alive(self, queue, clock):
        queue.enqueue(script_job())
        job = queue.dequeue("w")
        clock.advance(9 * 60)
        queue.update_heartbeat(job.job_id)
        clock.advance(5 * 60)
        assert queue.reset_stale_running() == 0

    def test_counts_and_list(self, queue):
        queue.enqueue(script_job("a"))
        second = queue.enqueue(script_job("b"))
        queue.remove(second.job_id)
        queue.enqueue(script_job("c"))
        queue.dequeue("w")

        counts = queue.counts()
        assert counts == {"pending": 1, "running": 1, "completed": 0, "failed": 0, "total": 2}
        assert len(queue.list_jobs()) == 2
        assert len(queue.list_jobs(status_filter="running")) == 1

    def test_progress_is_clamped(self, queue):
        handle = queue.enqueue(script_job())
        queue.dequeue("w")
        queue.update_progress(handle.job_id, 140)
        assert queue.get_status(handle.job_id).progress == 100
