from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import aiofiles
import httpx

from .base import ProviderReply, TranscriptionProvider, classify_status

logger = logging.getLogger(__name__)

_MIME_BY_TYPE = {
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "mp4": "audio/mp4",
    "webm": "audio/webm",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
}

_SUFFIX_BY_TYPE = {
    "wav": ".wav",
    "mp3": ".mp3",
    "mp4": ".m4a",
    "webm": ".webm",
    "ogg": ".ogg",
    "flac": ".flac",
}


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "").strip()[:200]
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            return str(err.get("message", ""))[:200]
        if err:
            return str(err)[:200]
    return str(payload)[:200]


class OpenAIWhisperProvider(TranscriptionProvider):
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "whisper-1",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    def name(self) -> str:
        return "openai_whisper"

    async def transcribe(
        self,
        audio_path: Path,
        *,
        language: str = "en",
        prompt: Optional[str] = None,
        timeout_sec: float = 300.0,
        file_type: str = "",
    ) -> ProviderReply:
        if not self._api_key:
            return ProviderReply.failure("auth", "OpenAI API key not configured.")

        # Payload is bounded by the transcription size ceiling.
        async with aiofiles.open(audio_path, "rb") as handle:
            audio_bytes = await handle.read()

        suffix = _SUFFIX_BY_TYPE.get(file_type, Path(audio_path).suffix or ".audio")
        mime = _MIME_BY_TYPE.get(file_type, "application/octet-stream")
        data = {"model": self._model, "response_format": "text", "language": language}
        if prompt:
            data["prompt"] = prompt

        try:
            response = await self._client.post(
                f"{self._base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                data=data,
                files={"file": (f"recording{suffix}", audio_bytes, mime)},
                timeout=httpx.Timeout(timeout_sec, connect=30.0),
            )
        except httpx.TimeoutException as exc:
            logger.warning("whisper request timed out after %.0fs", timeout_sec)
            return ProviderReply.failure("other", f"Transcription request timed out: {exc}")
        except httpx.HTTPError as exc:
            logger.warning("whisper transport error: %s", exc)
            return ProviderReply.failure("other", f"Transcription request failed: {exc}")

        if response.status_code >= 400:
            return ProviderReply.failure(
                classify_status(response.status_code),
                _error_message(response) or f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return ProviderReply.success(response.text)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
