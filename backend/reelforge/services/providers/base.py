"""Abstract interfaces for the external generation collaborators.

One interface per stage: text completion (script, scene plan), speech
synthesis (voiceover), video generation (clips) and media assembly (final
render). Video providers come in two variants that differ only in how a
result is delivered:

- PollingVideoProvider: submit once, then query status in a bounded loop
  inside the clip stage.
- CallbackVideoProvider: submit once with a callback address; the result
  arrives later at the completion gateway.

The clip stage calls ``generate()`` on either variant and never branches
on the provider type.
"""

import asyncio
import enum
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol, Type
from urllib.parse import urlencode

from pydantic import BaseModel

from reelforge.config import settings
from reelforge.services.errors import GenerationTimeoutError, ProviderTerminalError

logger = logging.getLogger(__name__)


@dataclass
class MediaResult:
    """Generated media, either inline bytes or a (possibly foreign) URL."""

    data: Optional[bytes] = None
    url: Optional[str] = None
    content_type: str = "application/octet-stream"
    duration_seconds: Optional[float] = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def source(self):
        return self.data if self.data is not None else self.url


class GenerationState(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = {GenerationState.SUCCEEDED, GenerationState.FAILED}


@dataclass
class GenerationStatus:
    """Provider-reported state of one asynchronous generation."""

    state: GenerationState
    media_url: Optional[str] = None
    media_bytes: Optional[bytes] = None
    error: Optional[str] = None
    generation_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def has_media(self) -> bool:
        return bool(self.media_url) or bool(self.media_bytes)


@dataclass
class ClipRequest:
    """Everything a video provider needs to render one scene."""

    job_id: uuid.UUID
    project_id: uuid.UUID
    scene_index: int
    prompt: str
    duration_seconds: int
    aspect_ratio: str = "9:16"
    style: Optional[str] = None


@dataclass
class AssemblyClip:
    scene_index: int
    url: str
    duration_seconds: float
    path: Optional[Path] = None  # set when the media lives in local storage


@dataclass
class AssemblyRequest:
    job_id: uuid.UUID
    clips: list[AssemblyClip]
    voiceover_url: Optional[str] = None
    voiceover_path: Optional[Path] = None
    aspect_ratio: str = "9:16"
    crossfade_seconds: float = 0.0
    output_name: str = "final.mp4"


class ClipTracker(Protocol):
    """Hooks the clip stage hands to ``VideoProvider.generate``."""

    async def progress(self, message: str, data: Optional[dict[str, Any]] = None) -> None:
        ...

    async def mark_pending(self, generation_id: str) -> None:
        ...


# ---------------------------------------------------------------------------
# Text / speech / assembly
# ---------------------------------------------------------------------------
class TextProvider(ABC):
    """Structured text generation (script and scene plan)."""

    name: str = "text"

    @abstractmethod
    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
    ) -> BaseModel:
        """Generate output validated against the supplied schema class."""
        ...


class SpeechProvider(ABC):
    name: str = "speech"

    @abstractmethod
    async def synthesize(self, text: str, language: str) -> MediaResult:
        ...

    async def close(self) -> None:
        """Release network resources held by the adapter."""


class AssemblyProvider(ABC):
    name: str = "assembly"

    @abstractmethod
    async def assemble(self, request: AssemblyRequest) -> MediaResult:
        ...


# ---------------------------------------------------------------------------
# Video
# ---------------------------------------------------------------------------
class VideoProvider(ABC):
    """Asynchronous clip generation."""

    name: str = "video"

    def __init__(self, max_concurrency: Optional[int] = None):
        self._max_concurrency = max_concurrency

    @property
    def max_concurrency(self) -> Optional[int]:
        """Ceiling on in-flight generations per job, or None for unlimited."""
        return self._max_concurrency

    @abstractmethod
    async def submit(self, request: ClipRequest, callback_url: Optional[str] = None) -> str:
        """Start a generation and return the provider's generation id."""
        ...

    @abstractmethod
    async def poll_status(self, generation_id: str) -> GenerationStatus:
        ...

    @abstractmethod
    async def generate(self, request: ClipRequest, tracker: ClipTracker) -> Optional[MediaResult]:
        """Produce a clip, or return None when the result will arrive out-of-band."""
        ...

    async def close(self) -> None:
        """Release network resources held by the adapter."""


class PollingVideoProvider(VideoProvider):
    """Video provider whose results are fetched by polling."""

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
    ):
        super().__init__(max_concurrency)
        self.poll_interval = (
            poll_interval if poll_interval is not None
            else settings.pipeline.poll_interval_seconds
        )
        self.poll_timeout = (
            poll_timeout if poll_timeout is not None
            else settings.pipeline.poll_timeout_seconds
        )

    async def generate(self, request: ClipRequest, tracker: ClipTracker) -> MediaResult:
        """Submit, then poll until terminal or the wall-clock ceiling passes.

        Raises:
            ProviderTerminalError: provider reported failure, or success without media
            GenerationTimeoutError: no terminal state within poll_timeout
        """
        generation_id = await self.submit(request)
        logger.info(
            f"{self.name}: scene {request.scene_index} submitted as {generation_id}"
        )

        deadline = time.monotonic() + self.poll_timeout
        attempt = 0
        while True:
            attempt += 1
            status = await self.poll_status(generation_id)

            if status.state == GenerationState.SUCCEEDED:
                if not status.has_media:
                    raise ProviderTerminalError(
                        f"{self.name} reported success without media for scene {request.scene_index}",
                        details={"generation_id": generation_id},
                    )
                return MediaResult(
                    data=status.media_bytes,
                    url=status.media_url,
                    content_type="video/mp4",
                    meta={"provider": self.name, "generation_id": generation_id},
                )

            if status.state == GenerationState.FAILED:
                raise ProviderTerminalError(
                    f"{self.name} generation failed for scene {request.scene_index}: "
                    f"{status.error or 'unknown error'}",
                    details={"generation_id": generation_id, "error": status.error},
                )

            await tracker.progress(
                f"Scene {request.scene_index}: poll attempt {attempt} ({status.state.value})",
                {
                    "scene_index": request.scene_index,
                    "generation_id": generation_id,
                    "attempt": attempt,
                },
            )

            if time.monotonic() + self.poll_interval > deadline:
                raise GenerationTimeoutError(
                    f"{self.name} generation for scene {request.scene_index} did not complete "
                    f"within {self.poll_timeout:.0f} seconds",
                    details={"generation_id": generation_id, "attempts": attempt},
                )
            await asyncio.sleep(self.poll_interval)


def build_callback_url(provider: str, request: ClipRequest) -> str:
    """Completion address carrying the correlation context in its query string."""
    query = urlencode({
        "job_id": str(request.job_id),
        "project_id": str(request.project_id),
        "scene_index": request.scene_index,
    })
    base = settings.server.callback_base_url.rstrip("/")
    return f"{base}/api/callbacks/{provider}?{query}"


class CallbackVideoProvider(VideoProvider):
    """Video provider that reports completion by calling us back."""

    async def generate(self, request: ClipRequest, tracker: ClipTracker) -> None:
        callback_url = build_callback_url(self.name, request)
        generation_id = await self.submit(request, callback_url)
        await tracker.mark_pending(generation_id)
        logger.info(
            f"{self.name}: scene {request.scene_index} submitted as {generation_id}, "
            "awaiting callback"
        )
        return None

    @abstractmethod
    def parse_notification(self, payload: dict[str, Any]) -> GenerationStatus:
        """Translate a provider callback body into a GenerationStatus."""
        ...


@dataclass
class ProviderSet:
    """The collaborators one job runs with."""

    text: TextProvider
    speech: SpeechProvider
    video: VideoProvider
    assembly: AssemblyProvider

    async def close(self) -> None:
        await self.speech.close()
        await self.video.close()
