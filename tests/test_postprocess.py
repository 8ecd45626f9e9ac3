"""Tests for post-processing, audio joining and question parsing."""

from pathlib import Path

import pytest

from fakes import WORDS, remote_media_client
from media_pipeline.errors import ErrorKind, PermanentProviderError, PostProcessingError
from media_pipeline.ffmpeg_runner import FfmpegErrorType, FfmpegResult
from media_pipeline.models import PostProcessingConfig
from media_pipeline.providers.storage import LocalStorage
from media_pipeline.services.postprocess import FfmpegAudioJoiner, PostProcessingService
from media_pipeline.services.questions import anchor_questions, extract_json, parse_questions


class FakeRunner:
    """Writes a marker file for each FFmpeg step instead of running it."""

    def __init__(self, fail_with=None):
        self.calls = []
        self.fail_with = fail_with

    def _finish(self, name, output_path, **details):
        self.calls.append((name, details))
        if self.fail_with is not None:
            return FfmpegResult(
                success=False, returncode=1, stderr="frame 1\nConversion failed!", duration_s=0.1,
                error_type=self.fail_with,
            )
        Path(output_path).write_bytes(name.encode())
        return FfmpegResult(success=True, returncode=0, stderr="", duration_s=0.1)

    def concat_with_bumpers(self, main_path, output_path, start_bumper=None, end_bumper=None,
                            width=720, height=1280):
        return self._finish("bumpers", output_path, start=start_bumper, end=end_bumper, size=(width, height))

    def overlay_music(self, video_path, music_path, output_path, volume=0.15):
        return self._finish("music", output_path, video=Path(video_path).name, volume=volume)

    def concat_media(self, input_files, output_path):
        return self._finish("concat", output_path, count=len(input_files))


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "store"), "http://media.test/media", client=remote_media_client())


SUBMISSION = {"id": "sub-1", "organizationId": "org-1"}


class TestPostProcessing:
    def service(self, storage, tmp_path, runner):
        config = PostProcessingConfig(default_music_volume=0.3, work_dir=str(tmp_path / "work"))
        return PostProcessingService(storage, config, lambda: runner, width=1080, height=1920)

    def test_bumpers_then_music(self, storage, tmp_path):
        runner = FakeRunner()
        output = {
            "id": "v-1",
            "startBumperUrl": "https://cdn/intro.mov",
            "musicUrl": "https://cdn/track.mp3",
        }

        url = self.service(storage, tmp_path, runner).process(output, SUBMISSION, "https://cdn/render.mp4")

        assert [name for name, _ in runner.calls] == ["bumpers", "music"]
        bumpers = runner.calls[0][1]
        assert bumpers["start"].endswith("start.mov")
        assert bumpers["end"] is None
        assert bumpers["size"] == (1080, 1920)
        assert runner.calls[1][1] == {"video": "with_bumpers.mp4", "volume": 0.3}
        assert url.startswith("http://media.test/media/organizations/org-1/videos/sub-1/")
        assert storage.fetch(url) == b"music"

    def test_explicit_music_volume(self, storage, tmp_path):
        runner = FakeRunner()
        output = {"id": "v-1", "musicUrl": "https://cdn/track.mp3", "musicVolume": 0.05}
        self.service(storage, tmp_path, runner).process(output, SUBMISSION, "https://cdn/render.mp4")
        assert runner.calls == [("music", {"video": "main.mp4", "volume": 0.05})]

    def test_nothing_configured(self, storage, tmp_path):
        runner = FakeRunner()
        url = self.service(storage, tmp_path, runner).process({"id": "v-1"}, SUBMISSION, "https://cdn/r.mp4")
        assert url == "https://cdn/r.mp4"
        assert runner.calls == []

    @pytest.mark.parametrize("error_type,kind", [
        (FfmpegErrorType.TIMEOUT, ErrorKind.TRANSIENT),
        (FfmpegErrorType.PERMANENT, ErrorKind.PERMANENT),
    ])
    def test_ffmpeg_failure_kind(self, storage, tmp_path, error_type, kind):
        service = self.service(storage, tmp_path, FakeRunner(fail_with=error_type))
        with pytest.raises(PostProcessingError) as exc_info:
            service.process({"id": "v-1", "endBumperUrl": "https://cdn/outro.mp4"}, SUBMISSION, "https://cdn/r.mp4")
        assert exc_info.value.kind == kind
        assert exc_info.value.message.endswith(": Conversion failed!")

    def test_missing_bumper_is_permanent(self, storage, tmp_path):
        service = self.service(storage, tmp_path, FakeRunner())
        with pytest.raises(PermanentProviderError):
            service.process({"id": "v-1", "startBumperUrl": "https://cdn/missing.mp4"}, SUBMISSION, "https://cdn/r.mp4")


class TestAudioJoiner:
    def test_single_clip_skips_ffmpeg(self):
        runner = FakeRunner()
        assert FfmpegAudioJoiner(lambda: runner).join([b"only"]) == b"only"
        assert runner.calls == []

    def test_joins_clips(self, tmp_path):
        runner = FakeRunner()
        joined = FfmpegAudioJoiner(lambda: runner, work_dir=str(tmp_path)).join([b"a", b"b", b"c"])
        assert joined == b"concat"
        assert runner.calls == [("concat", {"count": 3})]

    def test_no_clips(self):
        with pytest.raises(ValueError):
            FfmpegAudioJoiner(FakeRunner).join([])


class TestQuestions:
    def test_extract_json_tolerates_fences_and_prose(self):
        assert extract_json('```json\n[{"a": 1}]\n```') == [{"a": 1}]
        assert extract_json('Here you go: {"questions": []} Enjoy!') == {"questions": []}

    def test_extract_json_without_json(self):
        with pytest.raises(PermanentProviderError):
            extract_json("I cannot help with that.")

    def test_parse_questions_accepts_wrapped_list(self):
        questions = parse_questions({"questions": [{"question": "Q?", "options": ["a", "b"], "correct_index": 1}]})
        assert questions[0]["correct_index"] == 1
        assert questions[0]["appears_at"] is None

    def test_answer_out_of_range_is_rejected(self):
        with pytest.raises(PermanentProviderError):
            parse_questions('[{"question": "Q?", "options": ["a", "b"], "correct_index": 2}]')

    def test_anchor_questions_snaps_to_word_ends(self):
        questions = [{"question": "one"}, {"question": "two"}]
        anchored = anchor_questions(questions, list(WORDS), duration=3.0)
        # Targets 1.0s and 2.0s land on "found" (1.0) and "a" (1.8)
        assert [q["appears_at"] for q in anchored] == [1.0, 1.8]
        assert anchor_questions(questions, [], 10.0) == questions
