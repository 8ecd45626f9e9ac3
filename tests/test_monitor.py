"""Tests for the timeout monitor."""

import time
from datetime import timedelta

import pytest

from media_pipeline.db_models import utcnow
from media_pipeline.monitor import MonitorScheduler, TimeoutMonitor, timeout_message
from media_pipeline.state import Event, MediaKind, OutputStatus, SubmissionStatus


def later(minutes=45):
    return lambda: utcnow() + timedelta(minutes=minutes)


@pytest.fixture
def monitor(container):
    return TimeoutMonitor(container.store, container.aggregator, threshold_s=1800, clock=later())


def start(container, kind, output, **values):
    container.store.transition_output(kind, output["id"], Event.START_SCRIPT, **values)


class TestTimeoutMessage:
    def output(self, **fields):
        return {"updatedAt": utcnow() - timedelta(minutes=47), **fields}

    def test_video_without_render_id(self):
        message = timeout_message(MediaKind.VIDEO, self.output(), utcnow(), 1800)
        assert message.startswith("Timeout: Video generation exceeded 30 minutes (stuck for 47 minutes).")
        assert message.endswith("Render request may never have succeeded (no render job id).")

    def test_video_waiting_for_render(self):
        message = timeout_message(MediaKind.VIDEO, self.output(renderJobId="r"), utcnow(), 1800)
        assert message.endswith("Render webhook may have never arrived.")

    def test_video_waiting_for_captions(self):
        message = timeout_message(
            MediaKind.VIDEO, self.output(renderJobId="r", captionJobId="c"), utcnow(), 1800
        )
        assert message.endswith("Captioning webhook may have never arrived or processing failed.")

    def test_other_kinds(self):
        message = timeout_message(MediaKind.INTERACTIVE_PODCAST, self.output(), utcnow(), 1800)
        assert message.startswith("Timeout: Interactive podcast generation")
        assert message.endswith("Job may have crashed or failed without proper error handling.")


class TestSweep:
    def test_fails_stuck_outputs_and_recomputes(self, container, submission, monitor):
        _, sub, outputs = submission(MediaKind.AUDIO, MediaKind.VIDEO)
        start(container, MediaKind.AUDIO, outputs[MediaKind.AUDIO])
        container.store.transition_output(
            MediaKind.VIDEO, outputs[MediaKind.VIDEO]["id"], Event.START_MEDIA, renderJobId="render-7"
        )

        report = monitor.sweep()

        assert sorted(kind.value for kind, _ in report.failed) == ["audio", "video"]
        assert report.submissions == {sub["id"]}
        assert report.errors == 0
        video = container.store.get_output(MediaKind.VIDEO, outputs[MediaKind.VIDEO]["id"])
        assert video["status"] == OutputStatus.FAILED
        assert video["error"].endswith("Render webhook may have never arrived.")
        assert container.store.get_submission(sub["id"])["status"] == SubmissionStatus.FAILED

    def test_video_without_render_id(self, container, submission, monitor):
        _, _, outputs = submission(MediaKind.VIDEO)
        output_id = outputs[MediaKind.VIDEO]["id"]
        container.store.transition_output(MediaKind.VIDEO, output_id, Event.START_MEDIA)

        monitor.sweep()

        error = container.store.get_output(MediaKind.VIDEO, output_id)["error"]
        assert "no render job id" in error

    def test_recent_and_idle_outputs_are_left_alone(self, container, submission):
        _, _, outputs = submission(MediaKind.AUDIO, MediaKind.QUIZ)
        start(container, MediaKind.AUDIO, outputs[MediaKind.AUDIO])
        recent = TimeoutMonitor(container.store, container.aggregator, threshold_s=1800, clock=later(10))

        report = recent.sweep()

        assert report.failed == []
        assert container.store.get_output(MediaKind.AUDIO, outputs[MediaKind.AUDIO]["id"])["status"] == (
            OutputStatus.PROCESSING
        )
        # PENDING outputs never time out
        assert container.store.get_output(MediaKind.QUIZ, outputs[MediaKind.QUIZ]["id"])["status"] == (
            OutputStatus.PENDING
        )

    def test_row_that_moved_on_is_skipped(self, container, submission):
        _, _, outputs = submission(MediaKind.VIDEO)
        output_id = outputs[MediaKind.VIDEO]["id"]
        container.store.transition_output(MediaKind.VIDEO, output_id, Event.START_MEDIA, renderJobId="render-1")

        class WebhookRacesSweep:
            """Completes each Output right after the sweep has read it."""

            def __getattr__(self, name):
                return getattr(container.store, name)

            def find_stale(self, kind, cutoff):
                rows = container.store.find_stale(kind, cutoff)
                for row in rows:
                    container.store.transition_output(kind, row["id"], Event.COMPLETE)
                return rows

        monitor = TimeoutMonitor(WebhookRacesSweep(), container.aggregator, clock=later())
        report = monitor.sweep()

        assert report.failed == []
        assert container.store.get_output(MediaKind.VIDEO, output_id)["status"] == OutputStatus.COMPLETED

    def test_late_webhook_after_timeout_is_discarded(self, container, submission, monitor):
        _, sub, outputs = submission(MediaKind.VIDEO)
        output_id = outputs[MediaKind.VIDEO]["id"]
        container.store.transition_output(MediaKind.VIDEO, output_id, Event.START_MEDIA, renderJobId="render-1")
        monitor.sweep()

        late = {"event_type": "avatar_video.success",
                "event_data": {"video_id": "render-1", "url": "https://cdn.render/v.mp4"}}
        assert container.render_webhooks.handle(late) == {"success": True, "handled": False}
        assert container.receiver.handle_completion("render-1", "https://cdn.render/v.mp4") is False

        output = container.store.get_output(MediaKind.VIDEO, output_id)
        assert output["status"] == OutputStatus.FAILED
        assert output["error"].endswith("Render webhook may have never arrived.")
        assert output["videoUrl"] is None
        assert container.store.get_submission(sub["id"])["status"] == SubmissionStatus.FAILED

    def test_sweep_never_raises(self, container, submission):
        _, _, outputs = submission(MediaKind.AUDIO)
        start(container, MediaKind.AUDIO, outputs[MediaKind.AUDIO])

        class BrokenForVideo:
            def __getattr__(self, name):
                return getattr(container.store, name)

            def find_stale(self, kind, cutoff):
                if kind == MediaKind.VIDEO:
                    raise RuntimeError("database is locked")
                return container.store.find_stale(kind, cutoff)

        report = TimeoutMonitor(BrokenForVideo(), container.aggregator, clock=later()).sweep()

        assert report.errors == 1
        assert [kind for kind, _ in report.failed] == [MediaKind.AUDIO]


class CountingMonitor:
    def __init__(self):
        self.sweeps = 0

    def sweep(self):
        self.sweeps += 1


def test_scheduler_sweeps_at_start_and_stops():
    monitor = CountingMonitor()
    scheduler = MonitorScheduler(monitor, interval_s=3600)

    scheduler.start()
    deadline = time.time() + 5
    while monitor.sweeps == 0 and time.time() < deadline:
        time.sleep(0.01)
    scheduler.stop()

    assert monitor.sweeps == 1
    assert scheduler._thread is None
