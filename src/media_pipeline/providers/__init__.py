"""External provider contracts and their concrete clients."""

from .base import (
    AvatarRenderer,
    Captioner,
    RenderRequest,
    SpeechSynthesizer,
    Storage,
    TextGenerator,
    Transcriber,
    Transcript,
    WordTiming,
    language_code,
)
from .storage import LocalStorage, artifact_key

__all__ = [
    "AvatarRenderer",
    "Captioner",
    "RenderRequest",
    "SpeechSynthesizer",
    "Storage",
    "TextGenerator",
    "Transcriber",
    "Transcript",
    "WordTiming",
    "language_code",
    "LocalStorage",
    "artifact_key",
]
