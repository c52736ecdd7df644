"""Google Gen AI client wrapper using the google-genai SDK.

Returns a Vertex AI client when providers.gemini.project_id is set
(authentication via Application Default Credentials), otherwise a Gemini
Developer API client keyed by providers.gemini.api_key.

Usage:
    from reelforge.services.genai_client import get_genai_client

    client = get_genai_client()
"""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from google import genai
from google.genai import errors as genai_errors

from reelforge.config import settings
from reelforge.services.errors import (
    ConfigurationError,
    ProviderTerminalError,
    ProviderTransientError,
    RateLimitError,
)

# Load .env for GOOGLE_APPLICATION_CREDENTIALS (ADC)
load_dotenv(Path.cwd() / ".env")

_client: Optional[genai.Client] = None


def get_genai_client() -> genai.Client:
    """Get or create the shared google-genai client."""
    global _client

    if _client is None:
        cfg = settings.providers.gemini
        if cfg.project_id:
            _client = genai.Client(
                vertexai=True,
                project=cfg.project_id,
                location=cfg.location,
            )
        elif cfg.api_key:
            _client = genai.Client(api_key=cfg.api_key)
        else:
            raise ConfigurationError(
                "Google Gen AI not configured: set providers.gemini.api_key "
                "or providers.gemini.project_id"
            )

    return _client


def translate_genai_error(exc: genai_errors.APIError, provider: str) -> Exception:
    """Map a google-genai API error onto the pipeline error taxonomy."""
    code = getattr(exc, "code", None) or 0
    details = {"provider": provider, "status_code": code, "body": str(exc)[:500]}
    if code == 429:
        return RateLimitError(f"{provider} rate limited the request", details=details)
    if isinstance(exc, genai_errors.ServerError) or code == 408:
        return ProviderTransientError(f"{provider} unavailable ({code})", details=details)
    return ProviderTerminalError(f"{provider} API error ({code}): {exc}", details=details)
