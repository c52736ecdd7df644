"""reelforge - resumable short-form video generation pipeline.

This module provides startup helpers shared by the CLI and API:
configure_logging() applies the configured log level, and
validate_dependencies() fails fast when the local ffmpeg assembler is
selected but ffmpeg is missing.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure root logging from settings.logging."""
    from reelforge.config import settings

    logging.basicConfig(
        level=getattr(logging, settings.logging.level.upper(), logging.INFO),
        format=settings.logging.format,
    )


def validate_dependencies() -> None:
    """Validate required system dependencies are available.

    Only the ffmpeg assembler needs a local binary; remote assembly
    providers skip the check.

    Raises:
        RuntimeError: If ffmpeg is selected but not found or not functional.
    """
    from reelforge.config import settings

    if settings.providers.assembly != "ffmpeg":
        return

    try:
        result = subprocess.run(
            ['ffmpeg', '-version'],
            capture_output=True,
            check=True,
            text=True
        )
        version_line = result.stdout.split('\n')[0]
        logger.info(f"ffmpeg validated: {version_line}")
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        raise RuntimeError(
            "ffmpeg not found on PATH. Install ffmpeg to use the local assembler.\n"
            "Ubuntu/Debian: sudo apt-get install ffmpeg\n"
            "macOS: brew install ffmpeg\n"
            "Windows: https://ffmpeg.org/download.html"
        ) from e
