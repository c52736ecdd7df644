"""Ollama text adapter.

Connects via ollama.AsyncClient with optional auth headers and structured
JSON output via format='json' with schema instructions.

Note: We use format='json' instead of format=schema_dict because Ollama Cloud
does not reliably enforce JSON schema constraints. Instead, we append a
concise schema description to the system prompt and rely on format='json'
to guarantee valid JSON output.
"""

import json
import logging
from typing import Optional, Type

import httpx
from ollama import AsyncClient, ResponseError
from pydantic import BaseModel, ValidationError

from reelforge.config import settings
from reelforge.services.errors import (
    ProviderTerminalError,
    ProviderTransientError,
    RateLimitError,
    provider_retry,
)
from reelforge.services.providers.base import TextProvider

logger = logging.getLogger(__name__)


def _schema_instruction(schema: Type[BaseModel]) -> str:
    """Build a concise JSON schema instruction to append to the system prompt."""
    schema_json = json.dumps(schema.model_json_schema(), indent=2)
    return (
        "\n\nIMPORTANT: You MUST respond with a single JSON object (no markdown, "
        "no commentary, no code fences). The JSON must conform to this schema:\n"
        f"```json\n{schema_json}\n```\n"
        "All string fields must be strings (not arrays). Return ONLY the JSON object."
    )


def _strip_code_fence(raw: str) -> str:
    stripped = raw.strip()
    if stripped.startswith("```"):
        first_newline = stripped.find("\n")
        stripped = stripped[first_newline + 1:] if first_newline != -1 else ""
        if stripped.endswith("```"):
            stripped = stripped[:-3].rstrip()
    return stripped


class OllamaTextProvider(TextProvider):
    """Text provider backed by a local or cloud Ollama instance.

    Always passes stream=False to avoid async generator responses.
    """

    name = "ollama"

    def __init__(
        self,
        model_id: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ) -> None:
        cfg = settings.providers.ollama
        # Strip ollama/ prefix; the library uses bare model names
        self._ollama_model = (model_id or cfg.model).removeprefix("ollama/")
        api_key = api_key or cfg.api_key
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = AsyncClient(host=base_url or cfg.base_url, headers=headers)

    @provider_retry
    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
    ) -> BaseModel:
        schema_suffix = _schema_instruction(schema)
        if system_prompt:
            system = system_prompt + schema_suffix
        else:
            system = schema_suffix.lstrip()
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]

        try:
            response = await self._client.chat(
                model=self._ollama_model,
                messages=messages,
                format="json",
                options={"temperature": temperature},
                stream=False,
            )
        except ResponseError as e:
            if e.status_code == 429:
                raise RateLimitError("ollama rate limited the request") from e
            if e.status_code >= 500:
                raise ProviderTransientError(f"ollama unavailable ({e.status_code})") from e
            raise ProviderTerminalError(f"ollama error ({e.status_code}): {e.error}") from e
        except (httpx.TransportError, ConnectionError) as e:
            raise ProviderTransientError(f"ollama unreachable: {e}") from e

        raw = _strip_code_fence(response.message.content or "")
        try:
            return schema.model_validate_json(raw)
        except ValidationError as e:
            raise ProviderTerminalError(
                f"Ollama returned output that does not match {schema.__name__}: {e}"
            ) from e
