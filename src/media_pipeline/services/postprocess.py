"""FFmpeg post-processing: bumpers, background music, podcast joining.

Artifacts are downloaded into a scratch directory, processed with
``FfmpegRunner`` and uploaded back to storage. FFmpeg failures surface as
``PostProcessingError`` whose kind follows the runner's classification, so
I/O stalls and timeouts are retried and corrupt inputs are not.
"""

import logging
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import ErrorKind, PostProcessingError
from ..ffmpeg_runner import FfmpegResult, FfmpegRunner
from ..models import PostProcessingConfig
from ..providers.base import Storage
from ..providers.storage import artifact_key

logger = logging.getLogger(__name__)


def runner_factory(config: PostProcessingConfig) -> Callable[[], FfmpegRunner]:
    def build() -> FfmpegRunner:
        return FfmpegRunner(
            global_timeout_s=config.global_timeout_s,
            no_progress_timeout_s=config.no_progress_timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            temp_dir=config.work_dir,
        )
    return build


def _check(result: FfmpegResult, step: str) -> None:
    if result.success:
        return
    kind = ErrorKind.TRANSIENT if result.retryable else ErrorKind.PERMANENT
    last_line = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else "no output"
    raise PostProcessingError(
        f"{step} failed ({result.error_type.value if result.error_type else 'error'}): {last_line}",
        kind=kind,
    )


def _extension(url: str, default: str) -> str:
    suffix = Path(url.split("?", 1)[0]).suffix
    return suffix if suffix else default


class PostProcessingService:
    """Applies bumpers and background music to a rendered video."""

    def __init__(self, storage: Storage, config: Optional[PostProcessingConfig] = None,
                 make_runner: Optional[Callable[[], FfmpegRunner]] = None,
                 width: int = 720, height: int = 1280):
        self.storage = storage
        self.config = config or PostProcessingConfig()
        if self.config.work_dir:
            Path(self.config.work_dir).mkdir(parents=True, exist_ok=True)
        self.make_runner = make_runner or runner_factory(self.config)
        self.width = width
        self.height = height

    @staticmethod
    def needs_processing(output: Dict[str, Any]) -> bool:
        return bool(output.get("startBumperUrl") or output.get("endBumperUrl") or output.get("musicUrl"))

    def process(self, output: Dict[str, Any], submission: Dict[str, Any], source_url: str) -> str:
        """Post-process ``source_url`` for ``output`` and return the stored result URL.

        Returns ``source_url`` untouched when nothing is configured.
        """
        if not self.needs_processing(output):
            return source_url

        runner = self.make_runner()
        with tempfile.TemporaryDirectory(prefix="postprocess-", dir=self.config.work_dir) as tmp:
            work = Path(tmp)
            current = self._download(source_url, work / f"main{_extension(source_url, '.mp4')}")

            if output.get("startBumperUrl") or output.get("endBumperUrl"):
                start = self._download_optional(output.get("startBumperUrl"), work / "start")
                end = self._download_optional(output.get("endBumperUrl"), work / "end")
                joined = work / "with_bumpers.mp4"
                _check(
                    runner.concat_with_bumpers(
                        str(current), str(joined), start, end, width=self.width, height=self.height
                    ),
                    "Bumper concatenation",
                )
                current = joined

            if output.get("musicUrl"):
                music = self._download(output["musicUrl"], work / f"music{_extension(output['musicUrl'], '.mp3')}")
                volume = output.get("musicVolume")
                if volume is None:
                    volume = self.config.default_music_volume
                mixed = work / "with_music.mp4"
                _check(runner.overlay_music(str(current), str(music), str(mixed), volume=volume), "Music overlay")
                current = mixed

            key = artifact_key(submission["organizationId"], "videos", submission["id"], "mp4")
            url = self.storage.put_bytes(key, current.read_bytes(), "video/mp4")

        logger.info("Post-processed video %s stored at %s", output["id"], url)
        return url

    def _download(self, url: str, path: Path) -> Path:
        path.write_bytes(self.storage.fetch(url))
        return path

    def _download_optional(self, url: Optional[str], stem: Path) -> Optional[str]:
        if not url:
            return None
        return str(self._download(url, stem.with_suffix(_extension(url, ".mp4"))))


class FfmpegAudioJoiner:
    """Joins mp3 clips (one per podcast segment) into a single file."""

    def __init__(self, make_runner: Callable[[], FfmpegRunner], work_dir: Optional[str] = None):
        self.make_runner = make_runner
        self.work_dir = work_dir

    def join(self, clips: List[bytes]) -> bytes:
        if not clips:
            raise ValueError("No audio clips to join")
        if len(clips) == 1:
            return clips[0]
        with tempfile.TemporaryDirectory(prefix="join-", dir=self.work_dir) as tmp:
            paths = []
            for i, clip in enumerate(clips):
                path = Path(tmp) / f"segment_{i:03d}.mp3"
                path.write_bytes(clip)
                paths.append(str(path))
            output = Path(tmp) / "joined.mp3"
            _check(self.make_runner().concat_media(paths, str(output)), "Audio concatenation")
            return output.read_bytes()
