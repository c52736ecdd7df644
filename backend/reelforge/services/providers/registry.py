"""Provider registry.

Maps configured provider names to adapter factories, one table per stage.
Adapters are imported lazily so selecting Luma does not require the
google-genai stack to be importable, and vice versa.
"""

import importlib
import logging
from typing import Any, Callable, Optional

from reelforge.config import settings
from reelforge.services.errors import ConfigurationError
from reelforge.services.providers.base import (
    AssemblyProvider,
    ProviderSet,
    SpeechProvider,
    TextProvider,
    VideoProvider,
)

logger = logging.getLogger(__name__)

Factory = Callable[[], Any]


def _lazy(path: str) -> Factory:
    """Factory that imports ``module:Class`` on first use and instantiates it."""
    module_name, _, class_name = path.partition(":")

    def factory():
        module = importlib.import_module(module_name)
        return getattr(module, class_name)()

    return factory


_PKG = "reelforge.services.providers"

TEXT_PROVIDERS: dict[str, Factory] = {
    "gemini": _lazy(f"{_PKG}.gemini:GeminiTextProvider"),
    "ollama": _lazy(f"{_PKG}.ollama:OllamaTextProvider"),
}

SPEECH_PROVIDERS: dict[str, Factory] = {
    "elevenlabs": _lazy(f"{_PKG}.elevenlabs:ElevenLabsSpeechProvider"),
}

VIDEO_PROVIDERS: dict[str, Factory] = {
    "luma": _lazy(f"{_PKG}.luma:LumaVideoProvider"),
    "veo": _lazy(f"{_PKG}.veo:VeoVideoProvider"),
    "runway": _lazy(f"{_PKG}.runway:RunwayVideoProvider"),
}

ASSEMBLY_PROVIDERS: dict[str, Factory] = {
    "ffmpeg": _lazy(f"{_PKG}.ffmpeg_assembler:FfmpegAssemblyProvider"),
}

_TABLES: dict[str, dict[str, Factory]] = {
    "text": TEXT_PROVIDERS,
    "speech": SPEECH_PROVIDERS,
    "video": VIDEO_PROVIDERS,
    "assembly": ASSEMBLY_PROVIDERS,
}


def register_provider(kind: str, name: str, factory: Factory) -> None:
    """Add or replace a provider factory for a stage kind."""
    if kind not in _TABLES:
        raise ValueError(f"Unknown provider kind: {kind}")
    _TABLES[kind][name] = factory


def _create(kind: str, name: str):
    table = _TABLES[kind]
    factory = table.get(name)
    if factory is None:
        available = ", ".join(sorted(table)) or "none"
        raise ConfigurationError(
            f"Unknown {kind} provider '{name}'. Available: {available}"
        )
    logger.debug("Creating %s provider %s", kind, name)
    return factory()


def get_text_provider(name: str) -> TextProvider:
    return _create("text", name)


def get_speech_provider(name: str) -> SpeechProvider:
    return _create("speech", name)


def get_video_provider(name: str) -> VideoProvider:
    return _create("video", name)


def get_assembly_provider(name: str) -> AssemblyProvider:
    return _create("assembly", name)


def is_video_provider(name: str) -> bool:
    return name in VIDEO_PROVIDERS


def build_provider_set(
    text: Optional[str] = None,
    speech: Optional[str] = None,
    video: Optional[str] = None,
    assembly: Optional[str] = None,
) -> ProviderSet:
    """Instantiate one provider per stage, falling back to configured defaults.

    Raises:
        ConfigurationError: unknown provider name or missing credentials
    """
    cfg = settings.providers
    return ProviderSet(
        text=get_text_provider(text or cfg.text),
        speech=get_speech_provider(speech or cfg.speech),
        video=get_video_provider(video or cfg.video),
        assembly=get_assembly_provider(assembly or cfg.assembly),
    )
