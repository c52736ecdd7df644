"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Literal, Optional

import yaml
from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    poll_interval_seconds: float = 5.0
    poll_timeout_seconds: float = 360.0
    pending_max_age_minutes: float = 30.0
    watchdog_enabled: bool = True
    watchdog_interval_seconds: float = 300.0
    max_stage_attempts: int = 3
    min_scene_seconds: float = 4.0
    max_scene_seconds: float = 8.0
    duration_overflow_policy: Literal["best_effort", "fail"] = "best_effort"
    retry_max_attempts: int = 4
    retry_base_delay: float = 2.0
    retry_max_delay: float = 10.0
    rate_limit_delay_seconds: float = 30.0
    crossfade_seconds: float = 0.0


class GeminiConfig(BaseModel):
    """Google Gen AI credentials (Gemini API key or Vertex AI project)."""

    api_key: Optional[str] = None
    project_id: Optional[str] = None
    location: str = "us-central1"
    text_model: str = "gemini-2.5-flash"


class OllamaConfig(BaseModel):
    """Ollama endpoint for local or cloud text generation."""

    base_url: str = "http://localhost:11434"
    api_key: Optional[str] = None
    model: str = "llama3.1"


class ElevenLabsConfig(BaseModel):
    api_key: Optional[str] = None
    voice_id: Optional[str] = None
    model_id: str = "eleven_multilingual_v2"
    base_url: str = "https://api.elevenlabs.io/v1"


class LumaConfig(BaseModel):
    """Luma Dream Machine (callback delivery)."""

    api_key: Optional[str] = None
    model: str = "ray-2"
    resolution: str = "720p"
    max_concurrency: Optional[int] = 3
    base_url: str = "https://api.lumalabs.ai/dream-machine/v1"


class VeoConfig(BaseModel):
    """Google Veo (long-running operation, polled)."""

    model: str = "veo-3.1-fast-generate-001"
    max_concurrency: Optional[int] = None


class RunwayConfig(BaseModel):
    """Runway (task API, polled)."""

    api_key: Optional[str] = None
    model: str = "gen4_turbo"
    api_version: str = "2024-11-06"
    max_concurrency: Optional[int] = None
    base_url: str = "https://api.dev.runwayml.com/v1"


class ProvidersConfig(BaseModel):
    """Selected provider per stage plus per-provider credentials."""

    text: str = "gemini"
    speech: str = "elevenlabs"
    video: str = "luma"
    assembly: str = "ffmpeg"

    gemini: GeminiConfig = GeminiConfig()
    ollama: OllamaConfig = OllamaConfig()
    elevenlabs: ElevenLabsConfig = ElevenLabsConfig()
    luma: LumaConfig = LumaConfig()
    veo: VeoConfig = VeoConfig()
    runway: RunwayConfig = RunwayConfig()


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///reelforge.db"
    media_dir: Path = Path("tmp/media")
    public_base_url: str = "http://localhost:8000/media"

    @field_validator("media_dir", mode="before")
    @classmethod
    def convert_media_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    # Externally reachable base URL that providers POST completions back to
    callback_base_url: str = "http://localhost:8000"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: REELFORGE_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="REELFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    pipeline: PipelineConfig = PipelineConfig()
    providers: ProvidersConfig = ProvidersConfig()
    storage: StorageConfig = StorageConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Environment variables
        2. YAML file
        3. Init settings (programmatic defaults)
        """
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Singleton instance
settings = Settings()
