"""Interactive podcast: narrated audio with questions anchored to word timings."""

import logging
import math
from typing import Any, Dict, Optional

from ..errors import PreconditionError
from ..providers.base import SpeechSynthesizer, Storage, Transcriber
from ..providers.storage import artifact_key
from ..state import MediaKind
from .base import StageService, estimate_duration_s
from .questions import QuestionGenerator

logger = logging.getLogger(__name__)

INTERACTIVE_SCRIPT_GUIDANCE = (
    "Rewrite the article as an engaging single-narrator podcast episode that pauses for "
    "listener questions. Plain spoken prose only."
)


class InteractivePodcastService(StageService):
    kind = MediaKind.INTERACTIVE_PODCAST

    def __init__(self, store, text, speech: SpeechSynthesizer, storage: Storage,
                 transcriber: Transcriber, question_count: int = 3,
                 default_voice_id: Optional[str] = None, tagger=None):
        super().__init__(store, text, tagger)
        self.speech = speech
        self.storage = storage
        self.transcriber = transcriber
        self.questions = QuestionGenerator(text, count=question_count)
        self.default_voice_id = default_voice_id

    def build_script(self, article, output, language):
        script = self.text.generate(article["content"], language, guidance=INTERACTIVE_SCRIPT_GUIDANCE)
        return {"script": script.strip()}

    def prepare_media(self, output: Dict[str, Any], customization: Dict[str, Any]) -> Dict[str, Any]:
        voice_id = customization.get("voiceId") or output.get("voiceId") or self.default_voice_id
        if not voice_id:
            raise PreconditionError("No voice configured for interactive podcast generation")
        return {"voiceId": voice_id}

    def render_media(self, output, submission):
        language = self._language(submission)
        audio = self.speech.synthesize(output["script"], output["voiceId"])
        key = artifact_key(submission["organizationId"], "audio", submission["id"], "mp3")
        url = self.storage.put_bytes(key, audio, "audio/mpeg")

        transcript = self.transcriber.transcribe(url, language)
        if transcript.duration:
            duration = math.ceil(transcript.duration)
        elif transcript.words:
            duration = math.ceil(transcript.words[-1].end)
        else:
            duration = estimate_duration_s(output["script"])

        questions = self.questions.generate(
            transcript.text or output["script"], language, words=transcript.words, duration=duration
        )
        logger.debug("Interactive podcast %s: %d questions anchored", output["id"], len(questions))
        return {
            "audioUrl": url,
            "duration": duration,
            "transcript": transcript.text,
            "wordTimings": [w.to_dict() for w in transcript.words],
            "questions": questions,
        }
