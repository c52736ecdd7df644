"""Runway video adapter (task API, polled)."""

import logging
from typing import Optional

import httpx

from reelforge.config import settings
from reelforge.services.errors import (
    ConfigurationError,
    ProviderTerminalError,
    provider_retry,
    raise_for_provider_status,
)
from reelforge.services.providers.base import (
    ClipRequest,
    GenerationState,
    GenerationStatus,
    PollingVideoProvider,
)

logger = logging.getLogger(__name__)

_STATE_MAP = {
    "PENDING": GenerationState.PENDING,
    "THROTTLED": GenerationState.PENDING,
    "RUNNING": GenerationState.PROCESSING,
    "SUCCEEDED": GenerationState.SUCCEEDED,
    "FAILED": GenerationState.FAILED,
    "CANCELLED": GenerationState.FAILED,
}

_RATIOS = {"9:16": "720:1280", "16:9": "1280:720", "1:1": "960:960"}


class RunwayVideoProvider(PollingVideoProvider):
    name = "runway"

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        max_concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        cfg = settings.providers.runway
        super().__init__(
            max_concurrency if max_concurrency is not None else cfg.max_concurrency,
            poll_interval=poll_interval,
            poll_timeout=poll_timeout,
        )
        self.api_key = api_key or cfg.api_key
        if not self.api_key:
            raise ConfigurationError(
                "Runway API key not configured (providers.runway.api_key)"
            )
        self.model = model or cfg.model
        self.api_version = cfg.api_version
        self.base_url = (base_url or cfg.base_url).rstrip("/")
        self._client = http_client
        self._timeout = 60.0

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "X-Runway-Version": self.api_version,
            "Content-Type": "application/json",
        }

    @provider_retry
    async def submit(self, request: ClipRequest, callback_url: Optional[str] = None) -> str:
        # Runway accepts 5s or 10s clips
        duration = 5 if request.duration_seconds <= 5 else 10
        body = {
            "model": self.model,
            "promptText": request.prompt,
            "duration": duration,
            "ratio": _RATIOS.get(request.aspect_ratio, _RATIOS["9:16"]),
        }
        response = await self.client.post(
            f"{self.base_url}/text_to_video", json=body, headers=self._headers()
        )
        raise_for_provider_status(response, self.name)

        task_id = response.json().get("id")
        if not task_id:
            raise ProviderTerminalError(
                f"Runway response missing task id: {response.text[:200]}"
            )
        return task_id

    @provider_retry
    async def poll_status(self, generation_id: str) -> GenerationStatus:
        response = await self.client.get(
            f"{self.base_url}/tasks/{generation_id}", headers=self._headers()
        )
        raise_for_provider_status(response, self.name)
        data = response.json()

        output = data.get("output") or []
        return GenerationStatus(
            state=_STATE_MAP.get(data.get("status", ""), GenerationState.PROCESSING),
            media_url=output[0] if output else None,
            error=data.get("failure") or data.get("error"),
            generation_id=generation_id,
        )
