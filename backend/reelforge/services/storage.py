"""
Durable media storage for reelforge.

Re-hosts generated media under a local directory served at
settings.storage.public_base_url, so later stages never depend on a
third-party URL's lifetime. Files are laid out per job:

- {media_dir}/{job_id}/{name}

Implements path traversal protection to prevent directory escape attacks.
"""
import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional, Union

import httpx

from reelforge.config import settings
from reelforge.services.errors import StateConsistencyError, provider_retry, raise_for_provider_status

logger = logging.getLogger(__name__)


class LocalMediaStorage:
    """Filesystem-backed durable storage with stable public URLs."""

    def __init__(
        self,
        base_dir: Union[str, Path, None] = None,
        public_base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            base_dir: Root directory for stored media.
                      If None, uses settings.storage.media_dir
            public_base_url: URL prefix the base directory is served under.
            http_client: Optional client used to download third-party media.
        """
        if base_dir is None:
            base_dir = settings.storage.media_dir

        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = (public_base_url or settings.storage.public_base_url).rstrip("/")
        self._http_client = http_client

    def _job_dir(self, job_id: uuid.UUID) -> Path:
        job_dir = (self.base_dir / str(job_id)).resolve()

        if not job_dir.is_relative_to(self.base_dir):
            raise ValueError("Invalid job path")

        job_dir.mkdir(exist_ok=True)
        return job_dir

    def store(self, data: bytes, name: str, job_id: uuid.UUID) -> str:
        """Write bytes under the job's directory and return the stable URL."""
        job_dir = self._job_dir(job_id)
        filepath = (job_dir / name).resolve()
        if not filepath.is_relative_to(job_dir):
            raise ValueError(f"Invalid media name: {name}")

        # Write to a temp file first so readers never see a partial file
        tmp_path = filepath.with_suffix(filepath.suffix + ".part")
        tmp_path.write_bytes(data)
        tmp_path.replace(filepath)

        url = f"{self.public_base_url}/{job_id}/{name}"
        logger.debug(f"Stored {len(data)} bytes at {filepath}")
        return url

    def is_durable(self, url: str) -> bool:
        return url.startswith(self.public_base_url + "/")

    def local_path(self, url: str) -> Path:
        """Map a stable URL back to its file on disk."""
        if not self.is_durable(url):
            raise StateConsistencyError(f"Not a durable media URL: {url}")
        relative = url[len(self.public_base_url) + 1:]
        path = (self.base_dir / relative).resolve()
        if not path.is_relative_to(self.base_dir):
            raise ValueError("Invalid media path")
        return path

    @provider_retry
    async def _download(self, url: str) -> bytes:
        if self._http_client is not None:
            response = await self._http_client.get(url, follow_redirects=True)
        else:
            async with httpx.AsyncClient(timeout=120.0) as client:
                response = await client.get(url, follow_redirects=True)
        raise_for_provider_status(response, "media-download")
        return response.content

    async def ensure_durable(
        self,
        source: Union[str, bytes],
        name: str,
        job_id: uuid.UUID,
    ) -> str:
        """Return a stable URL for media given as bytes or a (possibly foreign) URL.

        URLs already in this store are returned unchanged; anything else is
        downloaded and re-hosted.
        """
        if isinstance(source, bytes):
            return await asyncio.to_thread(self.store, source, name, job_id)
        if self.is_durable(source):
            return source

        logger.info(f"Re-hosting {source} for job {job_id} as {name}")
        data = await self._download(source)
        return await asyncio.to_thread(self.store, data, name, job_id)
