"""Gemini text adapter (google-genai SDK, structured JSON output)."""

import logging
from typing import Optional, Type

from google.genai import errors as genai_errors
from google.genai import types as genai_types
from pydantic import BaseModel, ValidationError

from reelforge.config import settings
from reelforge.services.errors import ProviderTerminalError, provider_retry
from reelforge.services.genai_client import get_genai_client, translate_genai_error
from reelforge.services.providers.base import TextProvider

logger = logging.getLogger(__name__)


class GeminiTextProvider(TextProvider):
    """Text provider backed by Gemini via google-genai.

    Supports structured JSON output via response_schema.
    """

    name = "gemini"

    def __init__(self, model_id: Optional[str] = None, client=None) -> None:
        self._model_id = model_id or settings.providers.gemini.text_model
        self._client = client or get_genai_client()

    @provider_retry
    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
    ) -> BaseModel:
        config = genai_types.GenerateContentConfig(
            temperature=temperature,
            response_mime_type="application/json",
            response_schema=schema,
            system_instruction=system_prompt,
        )
        try:
            response = await self._client.aio.models.generate_content(
                model=self._model_id,
                contents=prompt,
                config=config,
            )
        except genai_errors.APIError as e:
            raise translate_genai_error(e, self.name) from e

        try:
            return schema.model_validate_json(response.text or "")
        except ValidationError as e:
            raise ProviderTerminalError(
                f"Gemini returned output that does not match {schema.__name__}: {e}"
            ) from e
