"""httpx clients for the external text, speech, render, caption and
transcription providers.

Only the fields the pipeline reads are parsed; everything else in the
provider responses is ignored.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..errors import PermanentProviderError, TransientProviderError
from .base import (
    AvatarRenderer,
    Captioner,
    RenderRequest,
    SpeechSynthesizer,
    TextGenerator,
    Transcriber,
    Transcript,
    WordTiming,
    language_code,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 409, 425, 429}


class HttpProvider:
    """Shared request handling and error classification."""

    name = "provider"

    def __init__(self, base_url: str, headers: Dict[str, str], timeout_s: float = 60.0,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout_s)
        self.headers = headers

    def _request(self, method: str, path: str, authenticated: bool = True, **kwargs) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        headers = {**(self.headers if authenticated else {}), **kwargs.pop("headers", {})}
        try:
            response = self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{self.name} request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"{self.name} connection failed: {e}") from e

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientProviderError(
                f"{self.name} returned {response.status_code}: {response.text[:300]}"
            )
        if response.status_code >= 400:
            raise PermanentProviderError(
                f"{self.name} returned {response.status_code}: {response.text[:300]}"
            )
        return response

    def _json(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = self._request(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise PermanentProviderError(f"{self.name} returned invalid JSON") from e

    def close(self) -> None:
        self.client.close()


class OpenAITextGenerator(HttpProvider, TextGenerator):
    name = "text generation"

    def __init__(self, base_url: str, api_key: str, model: str, timeout_s: float = 60.0,
                 client: Optional[httpx.Client] = None):
        super().__init__(base_url, {"Authorization": f"Bearer {api_key}"}, timeout_s, client)
        self.model = model

    def generate(self, prompt: str, language: str, guidance: Optional[str] = None) -> str:
        system = f"Write your answer in {language.title()}."
        if guidance:
            system = f"{guidance}\n{system}"
        data = self._json(
            "POST",
            "/chat/completions",
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
            },
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise PermanentProviderError("text generation returned no choices") from e
        return (content or "").strip()


class OpenAITranscriber(HttpProvider, Transcriber):
    name = "transcription"

    def __init__(self, base_url: str, api_key: str, model: str, timeout_s: float = 300.0,
                 client: Optional[httpx.Client] = None):
        super().__init__(base_url, {"Authorization": f"Bearer {api_key}"}, timeout_s, client)
        self.model = model

    def transcribe(self, url: str, language: str) -> Transcript:
        media = self._request("GET", url, authenticated=False).content
        data = self._json(
            "POST",
            "/audio/transcriptions",
            files={"file": ("media.mp4", media)},
            data={
                "model": self.model,
                "language": language_code(language),
                "response_format": "verbose_json",
                "timestamp_granularities[]": "word",
            },
        )
        words = [
            WordTiming(word=w["word"], start=float(w["start"]), end=float(w["end"]))
            for w in data.get("words", [])
        ]
        return Transcript(text=data.get("text", ""), words=words, duration=data.get("duration"))


class ElevenLabsSynthesizer(HttpProvider, SpeechSynthesizer):
    name = "speech synthesis"

    def __init__(self, base_url: str, api_key: str, model: str, timeout_s: float = 120.0,
                 client: Optional[httpx.Client] = None):
        super().__init__(base_url, {"xi-api-key": api_key}, timeout_s, client)
        self.model = model

    def synthesize(self, text: str, voice_id: str) -> bytes:
        response = self._request(
            "POST",
            f"/text-to-speech/{voice_id}",
            headers={"Accept": "audio/mpeg"},
            json={"text": text, "model_id": self.model},
        )
        if not response.content:
            raise TransientProviderError("speech synthesis returned empty audio")
        return response.content


class HeyGenRenderer(HttpProvider, AvatarRenderer):
    name = "avatar render"

    def __init__(self, base_url: str, api_key: str, timeout_s: float = 60.0,
                 client: Optional[httpx.Client] = None):
        super().__init__(base_url, {"X-Api-Key": api_key}, timeout_s, client)

    def submit(self, request: RenderRequest) -> str:
        if request.character_type == "talking_photo":
            character = {"type": "talking_photo", "talking_photo_id": request.character_id}
        else:
            character = {"type": "avatar", "avatar_id": request.character_id, "avatar_style": "normal"}

        if request.audio_url:
            voice = {"type": "audio", "audio_url": request.audio_url}
        else:
            voice = {"type": "text", "input_text": request.script, "voice_id": request.voice_id}

        body = {
            "title": request.title,
            "video_inputs": [{"character": character, "voice": voice}],
            "dimension": {"width": request.width, "height": request.height},
        }
        if request.callback_id:
            body["callback_id"] = request.callback_id

        data = self._json("POST", "/v2/video/generate", json=body)
        video_id = (data.get("data") or {}).get("video_id")
        if not video_id:
            raise PermanentProviderError(f"avatar render returned no video id: {data.get('error')}")
        return video_id

    def default_voice(self, character_id: str) -> Optional[str]:
        data = self._json("GET", "/v2/avatars")
        for avatar in (data.get("data") or {}).get("avatars", []):
            if avatar.get("avatar_id") == character_id:
                return avatar.get("default_voice_id")
        return None


class SubmagicCaptioner(HttpProvider, Captioner):
    name = "captioning"

    def __init__(self, base_url: str, api_key: str, webhook_url: Optional[str],
                 timeout_s: float = 60.0, client: Optional[httpx.Client] = None):
        super().__init__(base_url, {"x-api-key": api_key}, timeout_s, client)
        self.webhook_url = webhook_url

    def submit(self, video_url: str, title: str, language: str) -> str:
        body = {"title": title, "language": language_code(language), "videoUrl": video_url}
        if self.webhook_url:
            body["webhookUrl"] = self.webhook_url
        data = self._json("POST", "/projects", json=body)
        project_id = data.get("id") or data.get("projectId")
        if not project_id:
            raise PermanentProviderError("captioning returned no project id")
        return project_id
