"""Generation collaborator adapters.

Usage:
    from reelforge.services.providers import build_provider_set

    providers = build_provider_set(video="veo")
    script = await providers.text.generate_text(prompt, ScriptOutput)
"""

from reelforge.services.providers.base import (
    AssemblyProvider,
    CallbackVideoProvider,
    ClipRequest,
    GenerationState,
    GenerationStatus,
    MediaResult,
    PollingVideoProvider,
    ProviderSet,
    SpeechProvider,
    TextProvider,
    VideoProvider,
)
from reelforge.services.providers.registry import (
    build_provider_set,
    get_video_provider,
    register_provider,
)

__all__ = [
    "AssemblyProvider",
    "CallbackVideoProvider",
    "ClipRequest",
    "GenerationState",
    "GenerationStatus",
    "MediaResult",
    "PollingVideoProvider",
    "ProviderSet",
    "SpeechProvider",
    "TextProvider",
    "VideoProvider",
    "build_provider_set",
    "get_video_provider",
    "register_provider",
]
