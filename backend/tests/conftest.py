"""Shared fixtures: in-memory database, local media storage and fake providers.

Environment overrides are applied before reelforge is imported so the
settings singleton never touches a real database or media directory.
"""

import os
import tempfile
import uuid
from typing import Optional

_TEST_MEDIA_DIR = tempfile.mkdtemp(prefix="reelforge-test-media-")
os.environ.setdefault("REELFORGE_STORAGE__DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("REELFORGE_STORAGE__MEDIA_DIR", _TEST_MEDIA_DIR)
os.environ.setdefault("REELFORGE_PIPELINE__WATCHDOG_ENABLED", "false")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from reelforge.config import settings
from reelforge.db.models import Base, Job, Project
from reelforge.schemas.script import ScenePlanEntry, ScenePlanOutput, ScriptOutput
from reelforge.services.errors import ProviderTerminalError
from reelforge.services.providers.base import (
    AssemblyProvider,
    AssemblyRequest,
    CallbackVideoProvider,
    ClipRequest,
    GenerationState,
    GenerationStatus,
    MediaResult,
    PollingVideoProvider,
    ProviderSet,
    SpeechProvider,
    TextProvider,
)
from reelforge.services.storage import LocalMediaStorage

PUBLIC_URL = "http://testserver/media"
REMOTE_MEDIA_URL = "https://cdn.example.com/generated"


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------
class FakeTextProvider(TextProvider):
    name = "fake-text"

    def __init__(self, scene_durations=(3, 3, 3, 3, 3)):
        self.scene_durations = list(scene_durations)
        self.calls: list[str] = []

    async def generate_text(self, prompt, schema, *, temperature=0.7, system_prompt=None):
        self.calls.append(schema.__name__)
        if schema is ScriptOutput:
            return ScriptOutput(script="Waves carry stories across the ocean. Listen closely.")
        return ScenePlanOutput(
            scenes=[
                ScenePlanEntry(duration=d, text=f"Narration {i}", prompt=f"Ocean shot {i}")
                for i, d in enumerate(self.scene_durations)
            ]
        )


class FakeSpeechProvider(SpeechProvider):
    name = "fake-speech"

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = 0

    async def synthesize(self, text, language):
        self.calls += 1
        if self.fail:
            raise ProviderTerminalError("voice quota exhausted", details={"status_code": 402})
        return MediaResult(data=b"ID3-audio", content_type="audio/mpeg", meta={"voice": "test"})


class FakeAssemblyProvider(AssemblyProvider):
    name = "fake-assembly"

    def __init__(self):
        self.requests: list[AssemblyRequest] = []

    async def assemble(self, request):
        self.requests.append(request)
        total = sum(c.duration_seconds for c in request.clips)
        return MediaResult(data=b"final-video", content_type="video/mp4", duration_seconds=total)


class FakePollingVideoProvider(PollingVideoProvider):
    """Completes each scene after ``polls_before_done`` non-terminal polls."""

    name = "fake-poll"

    def __init__(self, max_concurrency=None, polls_before_done=1, fail_scenes=(), poll_timeout=5.0):
        super().__init__(max_concurrency, poll_interval=0, poll_timeout=poll_timeout)
        self.polls_before_done = polls_before_done
        self.fail_scenes = set(fail_scenes)
        self.submitted: list[int] = []
        self._polls: dict[str, int] = {}
        self._scenes: dict[str, int] = {}
        self.closed = False

    async def submit(self, request: ClipRequest, callback_url=None):
        generation_id = f"poll-{request.scene_index}-{uuid.uuid4().hex[:6]}"
        self.submitted.append(request.scene_index)
        self._polls[generation_id] = 0
        self._scenes[generation_id] = request.scene_index
        return generation_id

    async def poll_status(self, generation_id):
        self._polls[generation_id] += 1
        scene = self._scenes[generation_id]
        if scene in self.fail_scenes:
            return GenerationStatus(GenerationState.FAILED, error="content filtered",
                                    generation_id=generation_id)
        if self._polls[generation_id] <= self.polls_before_done:
            return GenerationStatus(GenerationState.PROCESSING, generation_id=generation_id)
        return GenerationStatus(
            GenerationState.SUCCEEDED,
            media_bytes=f"clip-{scene}".encode(),
            generation_id=generation_id,
        )

    async def close(self):
        self.closed = True


class FakeCallbackVideoProvider(CallbackVideoProvider):
    """Records submissions; results are delivered by tests through the gateway."""

    name = "fake-callback"

    def __init__(self, max_concurrency: Optional[int] = None):
        super().__init__(max_concurrency)
        self.submitted: list[tuple[int, str]] = []
        self.statuses: dict[str, GenerationStatus] = {}
        self.polled: list[str] = []
        self.closed = False

    async def submit(self, request: ClipRequest, callback_url=None):
        self.submitted.append((request.scene_index, callback_url))
        return f"cb-{request.scene_index}"

    async def poll_status(self, generation_id):
        self.polled.append(generation_id)
        return self.statuses.get(
            generation_id,
            GenerationStatus(GenerationState.PROCESSING, generation_id=generation_id),
        )

    def parse_notification(self, payload):
        return GenerationStatus(
            state=GenerationState(payload["state"]),
            media_url=payload.get("video"),
            error=payload.get("error"),
            generation_id=payload.get("id"),
        )

    async def close(self):
        self.closed = True


def succeeded(scene_index: int, generation_id: Optional[str] = None) -> GenerationStatus:
    return GenerationStatus(
        GenerationState.SUCCEEDED,
        media_url=f"{REMOTE_MEDIA_URL}/clip-{scene_index}.mp4",
        generation_id=generation_id or f"cb-{scene_index}",
    )


def failed(scene_index: int, error: str = "moderation rejected") -> GenerationStatus:
    return GenerationStatus(GenerationState.FAILED, error=error, generation_id=f"cb-{scene_index}")


class RecordingResumer:
    """Stands in for workers.tasks.schedule_pipeline."""

    def __init__(self):
        self.calls: list[tuple[uuid.UUID, uuid.UUID, str]] = []

    def __call__(self, project_id, job_id, resume_step):
        self.calls.append((project_id, job_id, resume_step))

    @property
    def steps(self) -> list[str]:
        return [step for _, _, step in self.calls]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


def _serve_remote_media(request: httpx.Request) -> httpx.Response:
    if request.url.host == "cdn.example.com":
        return httpx.Response(200, content=b"remote:" + request.url.path.encode())
    return httpx.Response(404)


@pytest_asyncio.fixture
async def storage(tmp_path):
    client = httpx.AsyncClient(transport=httpx.MockTransport(_serve_remote_media))
    yield LocalMediaStorage(
        base_dir=tmp_path / "media",
        public_base_url=PUBLIC_URL,
        http_client=client,
    )
    await client.aclose()


@pytest.fixture
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings.pipeline, "retry_base_delay", 0.0)
    monkeypatch.setattr(settings.pipeline, "retry_max_delay", 0.0)
    monkeypatch.setattr(settings.pipeline, "rate_limit_delay_seconds", 0.0)


def make_providers(video=None, speech=None, text=None) -> ProviderSet:
    return ProviderSet(
        text=text or FakeTextProvider(),
        speech=speech or FakeSpeechProvider(),
        video=video or FakePollingVideoProvider(),
        assembly=FakeAssemblyProvider(),
    )


async def create_job(session: AsyncSession, duration: int = 30, **project_fields) -> tuple[uuid.UUID, uuid.UUID]:
    project = Project(topic="The hidden life of ocean currents", duration=duration, **project_fields)
    session.add(project)
    await session.flush()
    job = Job(project_id=project.id)
    session.add(job)
    await session.commit()
    return project.id, job.id
