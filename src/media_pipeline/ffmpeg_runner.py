"""FFmpeg runner with process isolation, timeout enforcement and progress monitoring.

Used by post-processing (bumpers, background music) and by the podcast
joiner. FFmpeg runs in its own process group so a timed-out run can be
killed together with any children it spawned.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Progress parsing from FFmpeg's ``-progress`` stream
- Error classification for retry logic
- Artifact preservation on failure
"""

import logging
import os
import re
import signal
import subprocess
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import imageio_ffmpeg

logger = logging.getLogger(__name__)

_OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+)\.(\d+)")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")

# stderr lines kept for classification and failure logs
STDERR_TAIL_LINES = 200


class FfmpegErrorType(Enum):
    """FFmpeg error classification for retry logic."""
    PERMANENT = "permanent"     # Missing input, invalid format, codec error
    TRANSIENT = "transient"     # I/O stall, disk full
    TIMEOUT = "timeout"         # Global or no-progress timeout


@dataclass
class FfmpegProgress:
    """FFmpeg progress metrics."""
    current_time_s: float = 0.0
    speed: float = 0.0
    last_update: float = 0.0


@dataclass
class FfmpegResult:
    """Result of an FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    @property
    def retryable(self) -> bool:
        return self.error_type in (FfmpegErrorType.TRANSIENT, FfmpegErrorType.TIMEOUT)


class FfmpegRunner:
    """FFmpeg orchestration with timeouts and process-group cleanup.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=600, no_progress_timeout_s=120)
        >>> result = runner.overlay_music("video.mp4", "music.mp3", "out.mp4", volume=0.15)
        >>> if not result.success:
        ...     print(result.error_type, result.artifacts_saved)
    """

    def __init__(
        self,
        global_timeout_s: int = 1800,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "error",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Kill FFmpeg if progress stalls this long
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save command and stderr on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info)
            temp_dir: Directory for concat lists and failure artifacts
            progress_callback: Optional callback for progress updates
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()

    def concat_media(self, input_files: Sequence[str], output_path: str) -> FfmpegResult:
        """Concatenate same-codec files with the concat demuxer (stream copy).

        Raises:
            ValueError: If input_files is empty
        """
        if not input_files:
            raise ValueError("No input files provided for concatenation")

        list_path = self._get_temp_dir() / f"concat_list_{os.getpid()}_{time.time_ns()}.txt"
        try:
            with open(list_path, "w", encoding="utf-8") as f:
                for path in input_files:
                    escaped = str(Path(path).resolve()).replace("'", "'\\''")
                    f.write(f"file '{escaped}'\n")

            cmd = [
                self._get_ffmpeg_exe(), "-y",
                "-f", "concat", "-safe", "0",
                "-i", str(list_path),
                "-c", "copy",
                *self._progress_args(),
                output_path,
            ]
            return self._run_ffmpeg(cmd)
        finally:
            if list_path.exists():
                list_path.unlink()

    def concat_with_bumpers(
        self,
        main_path: str,
        output_path: str,
        start_bumper: Optional[str] = None,
        end_bumper: Optional[str] = None,
        width: int = 720,
        height: int = 1280,
    ) -> FfmpegResult:
        """Join bumper clips around the main video, re-encoding to one format.

        Bumpers rarely share codec or resolution with the render, so every
        input is scaled and padded to ``width``x``height`` before the concat
        filter.
        """
        inputs = [p for p in (start_bumper, main_path, end_bumper) if p]
        cmd = [self._get_ffmpeg_exe(), "-y"]
        for path in inputs:
            cmd.extend(["-i", path])

        filters = []
        for i in range(len(inputs)):
            filters.append(
                f"[{i}:v]scale={width}:{height}:force_original_aspect_ratio=decrease,"
                f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps=30[v{i}]"
            )
            filters.append(f"[{i}:a]aresample=44100[a{i}]")
        streams = "".join(f"[v{i}][a{i}]" for i in range(len(inputs)))
        filters.append(f"{streams}concat=n={len(inputs)}:v=1:a=1[outv][outa]")

        cmd.extend([
            "-filter_complex", ";".join(filters),
            "-map", "[outv]", "-map", "[outa]",
            "-c:v", "libx264", "-preset", "veryfast", "-pix_fmt", "yuv420p",
            "-c:a", "aac",
            "-movflags", "+faststart",
            *self._progress_args(),
            output_path,
        ])
        return self._run_ffmpeg(cmd)

    def overlay_music(
        self, video_path: str, music_path: str, output_path: str, volume: float = 0.15
    ) -> FfmpegResult:
        """Mix looped background music under the video's own audio track."""
        cmd = [
            self._get_ffmpeg_exe(), "-y",
            "-i", video_path,
            "-stream_loop", "-1", "-i", music_path,
            "-filter_complex",
            f"[1:a]volume={volume}[m];[0:a][m]amix=inputs=2:duration=first:dropout_transition=0[a]",
            "-map", "0:v", "-map", "[a]",
            "-c:v", "copy", "-c:a", "aac",
            "-shortest",
            *self._progress_args(),
            output_path,
        ]
        return self._run_ffmpeg(cmd)

    def _progress_args(self) -> List[str]:
        return ["-progress", "pipe:2", "-nostats", "-loglevel", self.ffmpeg_loglevel]

    def _run_ffmpeg(self, cmd: List[str]) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring."""
        start_time = time.time()
        self._progress = FfmpegProgress(last_update=start_time)
        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)

        self._process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            bufsize=1,
            start_new_session=(os.name == "posix"),
        )
        monitor = threading.Thread(
            target=self._monitor_progress,
            args=(self._process.stderr, stderr_tail),
            daemon=True,
        )
        monitor.start()

        timeout_reason = None
        try:
            while True:
                try:
                    returncode = self._process.wait(timeout=1.0)
                    break
                except subprocess.TimeoutExpired:
                    pass
                now = time.time()
                if now - start_time > self.global_timeout_s:
                    timeout_reason = "global"
                elif now - self._progress.last_update > self.no_progress_timeout_s:
                    timeout_reason = "no_progress"
                if timeout_reason:
                    logger.warning("FFmpeg %s timeout after %.0fs, killing", timeout_reason, now - start_time)
                    self._kill_process_tree()
                    returncode = -1
                    break
        except BaseException:
            self._kill_process_tree()
            raise
        finally:
            monitor.join(timeout=2)
            self._process = None

        stderr = "\n".join(stderr_tail)
        error_type = None
        if timeout_reason:
            error_type = FfmpegErrorType.TIMEOUT
        elif returncode != 0:
            error_type = self._classify_error(stderr)

        artifacts = []
        if returncode != 0 and self.save_artifacts_on_failure:
            artifacts = self._save_failure_artifacts(cmd, stderr)

        return FfmpegResult(
            success=(returncode == 0),
            returncode=returncode,
            stderr=stderr,
            duration_s=time.time() - start_time,
            error_type=error_type,
            final_progress=self._progress,
            artifacts_saved=artifacts,
        )

    def _monitor_progress(self, stderr_stream, stderr_tail: deque) -> None:
        """Read FFmpeg stderr, updating progress and keeping a tail for errors.

        Progress lines look like ``out_time=00:00:05.123456`` and
        ``speed=2.5x``; everything else is diagnostic output.
        """
        last_callback = 0.0
        for line in stderr_stream:
            line = line.rstrip()
            match = _OUT_TIME_RE.search(line)
            if match:
                h, m, s, frac = match.groups()
                self._progress.current_time_s = (
                    int(h) * 3600 + int(m) * 60 + int(s) + float(f"0.{frac}")
                )
                self._progress.last_update = time.time()
                if self.progress_callback and self._progress.last_update - last_callback >= 2.0:
                    last_callback = self._progress.last_update
                    try:
                        self.progress_callback(self._progress)
                    except Exception:
                        logger.warning("Progress callback failed", exc_info=True)
                continue
            match = _SPEED_RE.search(line)
            if match:
                self._progress.speed = float(match.group(1))
                continue
            if "=" in line and " " not in line:
                # Remaining key=value progress fields
                continue
            stderr_tail.append(line)

    def _kill_process_tree(self) -> None:
        """Terminate FFmpeg's process group, escalating to SIGKILL after the grace period."""
        process = self._process
        if process is None or process.poll() is not None:
            return

        if os.name == "posix":
            try:
                os.killpg(process.pid, signal.SIGTERM)
            except ProcessLookupError:
                return
            try:
                process.wait(timeout=self.kill_grace_period_s)
            except subprocess.TimeoutExpired:
                try:
                    os.killpg(process.pid, signal.SIGKILL)
                except ProcessLookupError:
                    pass
                process.wait()
        else:
            process.terminate()
            try:
                process.wait(timeout=self.kill_grace_period_s)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify an FFmpeg failure for retry logic."""
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "matches no streams",
            "corrupt",
        ]
        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        # I/O errors, connection resets, disk full and unknown failures
        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Write the failing command and stderr tail for debugging."""
        temp_dir = self._get_temp_dir()
        stamp = time.strftime("%Y%m%d-%H%M%S")
        log_path = temp_dir / f"ffmpeg_error_{stamp}_{os.getpid()}.log"
        try:
            with open(log_path, "w", encoding="utf-8") as f:
                f.write("=" * 80 + "\n")
                f.write(f"FFmpeg Error Log  {time.ctime()}  PID {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n" + " ".join(cmd) + "\n\n")
                f.write("STDERR:\n" + (stderr or "(empty)") + "\n")
        except OSError:
            logger.warning("Failed to save FFmpeg error log", exc_info=True)
            return []
        logger.info("FFmpeg failure log saved to %s", log_path)
        return [log_path]

    def _get_temp_dir(self) -> Path:
        temp_dir = Path(self.temp_dir) if self.temp_dir else Path(tempfile.gettempdir())
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir

    @staticmethod
    def _get_ffmpeg_exe() -> str:
        return imageio_ffmpeg.get_ffmpeg_exe()
