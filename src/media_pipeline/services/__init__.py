"""Per-kind stage services and their helpers."""

from .audio import AudioService
from .base import StageService, estimate_duration_s
from .interactive_podcast import InteractivePodcastService
from .podcast import PodcastService
from .postprocess import FfmpegAudioJoiner, PostProcessingService
from .questions import QuestionGenerator
from .quiz import QuizService
from .tagging import AutoTagger
from .video import VideoService

__all__ = [
    "AudioService",
    "StageService",
    "estimate_duration_s",
    "InteractivePodcastService",
    "PodcastService",
    "FfmpegAudioJoiner",
    "PostProcessingService",
    "QuestionGenerator",
    "QuizService",
    "AutoTagger",
    "VideoService",
]
