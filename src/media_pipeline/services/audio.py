"""Narrated audio: script -> speech -> stored mp3."""

import logging
from typing import Any, Dict, Optional

from ..errors import PreconditionError
from ..providers.base import SpeechSynthesizer, Storage
from ..providers.storage import artifact_key
from ..state import MediaKind
from .base import StageService, estimate_duration_s

logger = logging.getLogger(__name__)

AUDIO_SCRIPT_GUIDANCE = (
    "Rewrite the article as a narration script for a single speaker. "
    "Plain spoken prose only: no headings, lists, stage directions or markup."
)


class AudioService(StageService):
    kind = MediaKind.AUDIO

    def __init__(self, store, text, speech: SpeechSynthesizer, storage: Storage,
                 default_voice_id: Optional[str] = None, tagger=None):
        super().__init__(store, text, tagger)
        self.speech = speech
        self.storage = storage
        self.default_voice_id = default_voice_id

    def build_script(self, article, output, language):
        script = self.text.generate(article["content"], language, guidance=AUDIO_SCRIPT_GUIDANCE)
        return {"script": script.strip()}

    def prepare_media(self, output: Dict[str, Any], customization: Dict[str, Any]) -> Dict[str, Any]:
        voice_id = customization.get("voiceId") or output.get("voiceId") or self.default_voice_id
        if not voice_id:
            raise PreconditionError("No voice configured for audio generation")
        return {"voiceId": voice_id}

    def render_media(self, output, submission):
        script = output["script"]
        audio = self.speech.synthesize(script, output["voiceId"])
        key = artifact_key(submission["organizationId"], "audio", submission["id"], "mp3")
        url = self.storage.put_bytes(key, audio, "audio/mpeg")
        logger.debug("Audio for %s stored at %s (%d bytes)", output["id"], url, len(audio))
        return {"audioUrl": url, "duration": estimate_duration_s(script)}
