"""Avatar video: script -> (speech) -> render request.

The media phase ends with the Output still PROCESSING and the provider's
render job id stored on it. Completion arrives through the render webhook
and is finished by ``webhooks.VideoWebhookReceiver``.
"""

import logging
from typing import Any, Dict, Optional

from ..errors import PipelineError, PreconditionError
from ..models import VideoConfig
from ..providers.base import AvatarRenderer, RenderRequest, SpeechSynthesizer, Storage
from ..providers.storage import artifact_key
from ..side_effects import run_best_effort
from ..state import MediaKind, OutputStatus
from .base import StageService
from .questions import extract_json

logger = logging.getLogger(__name__)

VIDEO_SCRIPT_GUIDANCE = (
    "Write a short-form vertical video script (about 60 to 90 seconds spoken) based on the "
    'article. Respond with only a JSON object with keys "title" and "script". The script '
    "is read aloud by a single presenter: no scene directions or markup."
)

CHARACTER_REQUIRED = "Video customization (character) must be configured before generating video"

# Customization keys copied onto the Output when present
CUSTOMIZATION_FIELDS = (
    "characterId",
    "characterType",
    "voiceId",
    "captionsEnabled",
    "generateQuestions",
    "startBumperUrl",
    "endBumperUrl",
    "musicUrl",
    "musicVolume",
)


class VideoService(StageService):
    kind = MediaKind.VIDEO
    asynchronous = True

    def __init__(self, store, text, speech: SpeechSynthesizer, renderer: AvatarRenderer,
                 storage: Storage, config: Optional[VideoConfig] = None,
                 default_voice_id: Optional[str] = None, tagger=None):
        super().__init__(store, text, tagger)
        self.speech = speech
        self.renderer = renderer
        self.storage = storage
        self.config = config or VideoConfig()
        self.default_voice_id = default_voice_id

    def awaiting_completion(self, output):
        return bool(output.get("renderJobId"))

    def build_script(self, article, output, language):
        raw = self.text.generate(article["content"], language, guidance=VIDEO_SCRIPT_GUIDANCE)
        try:
            data = extract_json(raw)
        except PipelineError:
            data = None
        if isinstance(data, dict) and data.get("script"):
            return {"script": str(data["script"]).strip(), "title": data.get("title") or article["title"]}
        # Model ignored the JSON instruction; use its text as the script
        return {"script": raw.strip(), "title": article["title"]}

    def prepare_media(self, output: Dict[str, Any], customization: Dict[str, Any]) -> Dict[str, Any]:
        values = {
            field: customization[field]
            for field in CUSTOMIZATION_FIELDS
            if customization.get(field) is not None
        }
        merged = {**output, **values}

        if not merged.get("characterId") or not merged.get("characterType"):
            raise PreconditionError(CHARACTER_REQUIRED)
        if merged["characterType"] not in ("avatar", "talking_photo"):
            raise PreconditionError(f"Unknown character type: {merged['characterType']}")

        if not merged.get("voiceId"):
            voice_id = run_best_effort(
                "default voice lookup", self.renderer.default_voice, merged["characterId"]
            )
            values["voiceId"] = voice_id or self.default_voice_id
        if self.config.synthesize_audio and not values.get("voiceId", merged.get("voiceId")):
            raise PreconditionError("No voice configured for the selected character")

        # Correlation ids from an earlier render must not match new webhooks
        values["renderJobId"] = None
        values["captionJobId"] = None
        return values

    def render_media(self, output, submission):
        request = RenderRequest(
            character_id=output["characterId"],
            character_type=output["characterType"],
            voice_id=output.get("voiceId"),
            title=output.get("title") or "Video",
            width=self.config.width,
            height=self.config.height,
            callback_id=output["id"],
        )
        if self.config.synthesize_audio:
            audio = self.speech.synthesize(output["script"], output["voiceId"])
            key = artifact_key(submission["organizationId"], "audio", submission["id"], "mp3")
            request.audio_url = self.storage.put_bytes(key, audio, "audio/mpeg")
        else:
            request.script = output["script"]

        render_job_id = self.renderer.submit(request)
        self.store.update_output(
            self.kind, output["id"], require_status=OutputStatus.PROCESSING, renderJobId=render_job_id
        )
        logger.info("Video %s submitted for rendering (render job %s)", output["id"], render_job_id)
        return None
