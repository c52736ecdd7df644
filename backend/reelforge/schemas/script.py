"""Pydantic schemas for structured text-provider output.

These schemas define the expected structure for LLM-generated scripts and
scene plans, enabling structured output constraints via response_schema
(Gemini) or schema instructions (Ollama).
"""

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field


def _coerce_to_str(v: Any) -> str:
    """Coerce list values to a space-joined string.

    Some LLM providers (e.g. Ollama) return arrays for fields declared as
    string in the JSON schema.
    """
    if isinstance(v, list):
        return " ".join(str(item) for item in v)
    return v


CoercedStr = Annotated[str, BeforeValidator(_coerce_to_str)]


class ScriptOutput(BaseModel):
    """Voiceover narration for the whole video."""

    script: CoercedStr = Field(
        description="The narration text only, no titles or scene descriptions. "
        "Hook in the first 3 seconds, clear flow, strong conclusion."
    )


class ScenePlanEntry(BaseModel):
    """One visual segment of the video."""

    duration: float = Field(
        description="Proposed scene length in seconds (3-10)"
    )
    text: CoercedStr = Field(
        description="Portion of the script narrated during this scene"
    )
    prompt: CoercedStr = Field(
        description="Detailed visual description for AI video generation, "
        "e.g. 'Cinematic aerial shot of vast ocean at sunset, dramatic clouds, "
        "smooth camera movement'"
    )


class ScenePlanOutput(BaseModel):
    """Scene breakdown covering the full script."""

    scenes: list[ScenePlanEntry] = Field(
        description="3-5 scenes in playback order covering the entire script"
    )
