"""Google Veo video adapter (long-running operation, polled)."""

import logging
from typing import Optional

from google.genai import errors as genai_errors
from google.genai import types

from reelforge.config import settings
from reelforge.services.errors import provider_retry
from reelforge.services.genai_client import get_genai_client, translate_genai_error
from reelforge.services.providers.base import (
    ClipRequest,
    GenerationState,
    GenerationStatus,
    PollingVideoProvider,
)

logger = logging.getLogger(__name__)

NEGATIVE_PROMPT = "text overlay, watermark, logo, blurry, deformed"


def veo_duration(seconds: float) -> int:
    """Veo accepts 4, 6 or 8 second clips."""
    clamped = max(4, min(8, round(seconds)))
    if clamped <= 4:
        return 4
    if clamped <= 6:
        return 6
    return 8


def _rai_filtered(operation) -> bool:
    response = getattr(operation, "response", None)
    count = getattr(response, "rai_media_filtered_count", None) if response else None
    return bool(count)


class VeoVideoProvider(PollingVideoProvider):
    name = "veo"

    def __init__(
        self,
        model: Optional[str] = None,
        *,
        max_concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
        client=None,
    ):
        cfg = settings.providers.veo
        super().__init__(
            max_concurrency if max_concurrency is not None else cfg.max_concurrency,
            poll_interval=poll_interval,
            poll_timeout=poll_timeout,
        )
        self.model = model or cfg.model
        self._client = client or get_genai_client()

    @provider_retry
    async def submit(self, request: ClipRequest, callback_url: Optional[str] = None) -> str:
        config = types.GenerateVideosConfig(
            aspect_ratio=request.aspect_ratio,
            duration_seconds=veo_duration(request.duration_seconds),
            number_of_videos=1,
            negative_prompt=NEGATIVE_PROMPT,
        )
        try:
            operation = await self._client.aio.models.generate_videos(
                model=self.model,
                prompt=request.prompt,
                config=config,
            )
        except genai_errors.APIError as e:
            raise translate_genai_error(e, self.name) from e
        return operation.name

    @provider_retry
    async def poll_status(self, generation_id: str) -> GenerationStatus:
        try:
            operation = await self._client.aio.operations.get(
                operation=types.GenerateVideosOperation(name=generation_id)
            )
        except genai_errors.APIError as e:
            raise translate_genai_error(e, self.name) from e

        if not operation.done:
            return GenerationStatus(state=GenerationState.PROCESSING, generation_id=generation_id)

        if _rai_filtered(operation):
            return GenerationStatus(
                state=GenerationState.FAILED,
                error="Content filtered by responsible AI",
                generation_id=generation_id,
            )

        response = getattr(operation, "response", None)
        videos = list(getattr(response, "generated_videos", None) or []) if response else []
        if not videos:
            return GenerationStatus(
                state=GenerationState.FAILED,
                error=str(getattr(operation, "error", None) or "No video in response"),
                generation_id=generation_id,
            )

        video = videos[0].video
        return GenerationStatus(
            state=GenerationState.SUCCEEDED,
            media_bytes=getattr(video, "video_bytes", None),
            media_url=getattr(video, "uri", None),
            generation_id=generation_id,
        )
