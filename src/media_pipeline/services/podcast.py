"""Two-voice podcast: dialogue script -> per-segment speech -> joined mp3.

The stored script is a JSON list of ``{"speaker": "HOST"|"GUEST", "text": ...}``
segments so a reviewer can edit lines without breaking the speaker mapping.
"""

import json
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ..errors import PermanentProviderError, PipelineError, PreconditionError
from ..providers.base import SpeechSynthesizer, Storage
from ..providers.storage import artifact_key
from ..state import MediaKind
from .base import StageService, estimate_duration_s
from .questions import extract_json

logger = logging.getLogger(__name__)

PODCAST_SCRIPT_GUIDANCE = (
    "Turn the article into a lively podcast conversation between a HOST and a GUEST. "
    'Respond with only a JSON array of objects with keys "speaker" ("HOST" or "GUEST") '
    'and "text". Keep each turn under 80 words.'
)


class PodcastSegment(BaseModel):
    speaker: Literal["HOST", "GUEST"]
    text: str = Field(..., min_length=1)


SEGMENT_LIST = TypeAdapter(List[PodcastSegment])


def parse_segments(data: Any) -> List[PodcastSegment]:
    """Validate dialogue segments from JSON text or parsed data."""
    if isinstance(data, str):
        data = extract_json(data)
    if isinstance(data, dict):
        data = data.get("segments", data.get("dialogue"))
    try:
        segments = SEGMENT_LIST.validate_python(data)
    except ValidationError as e:
        raise PermanentProviderError(f"Invalid podcast script: {e.error_count()} validation errors") from e
    if not segments:
        raise PermanentProviderError("Podcast script has no segments")
    return segments


class PodcastService(StageService):
    kind = MediaKind.PODCAST

    def __init__(self, store, text, speech: SpeechSynthesizer, storage: Storage, joiner,
                 host_voice_id: Optional[str] = None, guest_voice_id: Optional[str] = None,
                 tagger=None):
        super().__init__(store, text, tagger)
        self.speech = speech
        self.storage = storage
        self.joiner = joiner
        self.host_voice_id = host_voice_id
        self.guest_voice_id = guest_voice_id

    def build_script(self, article, output, language):
        raw = self.text.generate(article["content"], language, guidance=PODCAST_SCRIPT_GUIDANCE)
        segments = parse_segments(raw)
        return {"script": json.dumps([s.model_dump() for s in segments], ensure_ascii=False)}

    def prepare_media(self, output: Dict[str, Any], customization: Dict[str, Any]) -> Dict[str, Any]:
        host = customization.get("hostVoiceId") or output.get("hostVoiceId") or self.host_voice_id
        guest = customization.get("guestVoiceId") or output.get("guestVoiceId") or self.guest_voice_id
        if not host or not guest:
            raise PreconditionError("Podcast needs both a host and a guest voice")
        try:
            parse_segments(output["script"])
        except PipelineError as e:
            # Edited scripts are validated before any paid call
            raise PreconditionError(e.message) from e
        return {"hostVoiceId": host, "guestVoiceId": guest}

    def render_media(self, output, submission):
        segments = parse_segments(output["script"])
        voices = {"HOST": output["hostVoiceId"], "GUEST": output["guestVoiceId"]}

        clips = [self.speech.synthesize(segment.text, voices[segment.speaker]) for segment in segments]
        audio = self.joiner.join(clips)

        key = artifact_key(submission["organizationId"], "audio", submission["id"], "mp3")
        url = self.storage.put_bytes(key, audio, "audio/mpeg")
        spoken = " ".join(segment.text for segment in segments)
        logger.debug("Podcast %s: %d segments joined", output["id"], len(segments))
        return {"audioUrl": url, "duration": estimate_duration_s(spoken)}
