"""Luma Dream Machine video adapter (callback delivery).

Generations are submitted with a callback_url; Luma POSTs the generation
object back when its state changes. The same object shape is returned by
GET /generations/{id}, which the watchdog uses when a callback is lost.

Generation states: "queued" | "dreaming" | "completed" | "failed".
"""

import logging
from typing import Any, Optional

import httpx

from reelforge.config import settings
from reelforge.services.errors import (
    ConfigurationError,
    ProviderTerminalError,
    provider_retry,
    raise_for_provider_status,
)
from reelforge.services.providers.base import (
    CallbackVideoProvider,
    ClipRequest,
    GenerationState,
    GenerationStatus,
)

logger = logging.getLogger(__name__)

_STATE_MAP = {
    "queued": GenerationState.PENDING,
    "dreaming": GenerationState.PROCESSING,
    "completed": GenerationState.SUCCEEDED,
    "failed": GenerationState.FAILED,
}


def luma_duration(seconds: float) -> str:
    """Map a scene duration onto the clip lengths Luma accepts."""
    clamped = max(4, min(8, round(seconds)))
    return "5s" if clamped <= 5 else "9s"


class LumaVideoProvider(CallbackVideoProvider):
    """Luma ray-2 text-to-video."""

    name = "luma"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        resolution: Optional[str] = None,
        base_url: Optional[str] = None,
        max_concurrency: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        cfg = settings.providers.luma
        super().__init__(max_concurrency if max_concurrency is not None else cfg.max_concurrency)
        self.api_key = api_key or cfg.api_key
        if not self.api_key:
            raise ConfigurationError(
                "Luma API key not configured (providers.luma.api_key)"
            )
        self.model = model or cfg.model
        self.resolution = resolution or cfg.resolution
        self.base_url = (base_url or cfg.base_url).rstrip("/")
        self._client = http_client
        self._timeout = 60.0

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    @provider_retry
    async def submit(self, request: ClipRequest, callback_url: Optional[str] = None) -> str:
        body: dict[str, Any] = {
            "model": self.model,
            "prompt": request.prompt,
            "duration": luma_duration(request.duration_seconds),
            "resolution": self.resolution,
        }
        if callback_url:
            body["callback_url"] = callback_url
        if request.aspect_ratio in ("16:9", "9:16"):
            body["aspect_ratio"] = request.aspect_ratio

        response = await self.client.post(
            f"{self.base_url}/generations/video", json=body, headers=self._headers()
        )
        raise_for_provider_status(response, self.name)

        generation_id = response.json().get("id")
        if not generation_id:
            raise ProviderTerminalError(
                f"Luma response missing generation id: {response.text[:200]}"
            )
        return generation_id

    @provider_retry
    async def poll_status(self, generation_id: str) -> GenerationStatus:
        response = await self.client.get(
            f"{self.base_url}/generations/{generation_id}", headers=self._headers()
        )
        raise_for_provider_status(response, self.name)
        return self.parse_notification(response.json())

    def parse_notification(self, payload: dict[str, Any]) -> GenerationStatus:
        state = _STATE_MAP.get(payload.get("state", ""), GenerationState.PROCESSING)
        assets = payload.get("assets") or {}
        return GenerationStatus(
            state=state,
            media_url=assets.get("video") or payload.get("video_url"),
            error=payload.get("failure_reason"),
            generation_id=payload.get("id"),
        )
