"""ElevenLabs text-to-speech adapter."""

import logging
from typing import Optional

import httpx

from reelforge.config import settings
from reelforge.services.errors import (
    ConfigurationError,
    provider_retry,
    raise_for_provider_status,
)
from reelforge.services.providers.base import MediaResult, SpeechProvider

logger = logging.getLogger(__name__)

# "Rachel", used when the account exposes no voices
DEFAULT_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"


class ElevenLabsSpeechProvider(SpeechProvider):
    name = "elevenlabs"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        voice_id: Optional[str] = None,
        model_id: Optional[str] = None,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        cfg = settings.providers.elevenlabs
        self.api_key = api_key or cfg.api_key
        if not self.api_key:
            raise ConfigurationError(
                "ElevenLabs API key not configured (providers.elevenlabs.api_key)"
            )
        self.voice_id = voice_id or cfg.voice_id
        self.model_id = model_id or cfg.model_id
        self.base_url = (base_url or cfg.base_url).rstrip("/")
        self._client = http_client
        self._timeout = 120.0

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @provider_retry
    async def _resolve_voice(self) -> str:
        if self.voice_id:
            return self.voice_id

        response = await self.client.get(
            f"{self.base_url}/voices", headers={"xi-api-key": self.api_key}
        )
        raise_for_provider_status(response, self.name)
        voices = response.json().get("voices") or []
        self.voice_id = voices[0]["voice_id"] if voices else DEFAULT_VOICE_ID
        logger.info(f"Selected ElevenLabs voice {self.voice_id}")
        return self.voice_id

    @provider_retry
    async def _tts(self, voice_id: str, text: str) -> bytes:
        response = await self.client.post(
            f"{self.base_url}/text-to-speech/{voice_id}",
            headers={"xi-api-key": self.api_key, "Content-Type": "application/json"},
            json={
                "text": text,
                "model_id": self.model_id,
                "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
            },
        )
        raise_for_provider_status(response, self.name)
        return response.content

    async def synthesize(self, text: str, language: str) -> MediaResult:
        voice_id = await self._resolve_voice()
        audio = await self._tts(voice_id, text)
        return MediaResult(
            data=audio,
            content_type="audio/mpeg",
            meta={"provider": self.name, "voice_id": voice_id, "language": language},
        )
