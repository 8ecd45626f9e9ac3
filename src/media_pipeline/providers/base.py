"""Abstract contracts for the external providers the pipeline depends on.

Stage services and receivers only ever see these interfaces. Concrete HTTP
clients live in ``providers.http`` and ``providers.storage``; tests pass fakes.
Implementations signal retryable trouble (timeouts, 429, 5xx) with
``TransientProviderError`` and outright rejection with
``PermanentProviderError``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

LANGUAGE_CODES = {
    "ENGLISH": "en",
    "SPANISH": "es",
    "FRENCH": "fr",
    "GERMAN": "de",
    "ITALIAN": "it",
    "PORTUGUESE": "pt",
    "DUTCH": "nl",
    "POLISH": "pl",
    "HINDI": "hi",
    "JAPANESE": "ja",
    "CHINESE": "zh",
    "ARABIC": "ar",
}


def language_code(language: str) -> str:
    """Map a submission language (e.g. ENGLISH) to an ISO 639-1 code."""
    return LANGUAGE_CODES.get(language.upper(), language.lower()[:2])


@dataclass
class WordTiming:
    """One transcribed word with start/end offsets in seconds."""
    word: str
    start: float
    end: float

    def to_dict(self) -> dict:
        return {"word": self.word, "start": self.start, "end": self.end}


@dataclass
class Transcript:
    text: str
    words: List[WordTiming] = field(default_factory=list)
    duration: Optional[float] = None


@dataclass
class RenderRequest:
    """Avatar render input. Exactly one of ``audio_url`` / ``script`` is used."""
    character_id: str
    character_type: str
    voice_id: Optional[str]
    title: str
    script: Optional[str] = None
    audio_url: Optional[str] = None
    width: int = 720
    height: int = 1280
    callback_id: Optional[str] = None


class TextGenerator(ABC):
    """Text generation (scripts, questions, tags)."""

    @abstractmethod
    def generate(self, prompt: str, language: str, guidance: Optional[str] = None) -> str:
        """Generate text for ``prompt`` in ``language``.

        Args:
            prompt: Article content, script or instruction
            language: Submission language (e.g. ENGLISH)
            guidance: Optional system-style instructions

        Returns:
            Generated text (may be JSON when guidance asks for it)
        """
        pass


class SpeechSynthesizer(ABC):
    """Text-to-speech."""

    @abstractmethod
    def synthesize(self, text: str, voice_id: str) -> bytes:
        """Return encoded audio (mp3) for ``text`` spoken by ``voice_id``."""
        pass


class AvatarRenderer(ABC):
    """Asynchronous avatar video rendering.

    ``submit`` returns the provider's job id immediately; the finished video
    (or failure) arrives later through the render webhook.
    """

    @abstractmethod
    def submit(self, request: RenderRequest) -> str:
        """Start a render and return its correlation id."""
        pass

    @abstractmethod
    def default_voice(self, character_id: str) -> Optional[str]:
        """Default voice configured for a character, if the provider has one."""
        pass


class Captioner(ABC):
    """Asynchronous captioning of a rendered video."""

    @abstractmethod
    def submit(self, video_url: str, title: str, language: str) -> str:
        """Start captioning and return the captioning project id."""
        pass


class Transcriber(ABC):
    """Speech-to-text with word timings."""

    @abstractmethod
    def transcribe(self, url: str, language: str) -> Transcript:
        """Transcribe the media stored at ``url``.

        Args:
            url: Durable-storage URL of an audio or video file
            language: Submission language (e.g. ENGLISH)

        Returns:
            Transcript with word-level timings and, when known, duration
        """
        pass


class Storage(ABC):
    """Durable artifact storage addressed by key, exposed by URL."""

    @abstractmethod
    def put_bytes(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key`` and return its public URL."""
        pass

    @abstractmethod
    def put_from_url(self, key: str, source_url: str, content_type: str) -> str:
        """Copy a remote artifact into storage and return its public URL."""
        pass

    @abstractmethod
    def fetch(self, url: str) -> bytes:
        """Read an artifact (stored or remote) into memory."""
        pass

    def owns(self, url: str) -> bool:
        """True if ``url`` points at an artifact this storage issued."""
        return False
