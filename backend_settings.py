# backend/settings.py

"""
Application configuration using Pydantic settings.

Usage:
    from backend_settings import get_settings
    settings = get_settings()
"""

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Settings loaded from environment variables and a .env file.

    OPENAI_API_KEY is required for the diagnose endpoints. Supabase logging
    is enabled only when both SUPABASE_URL and a key are set.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "FixLens Brain API"
    debug: bool = Field(default=False, validation_alias="DEBUG")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # Knowledge base: a JSON file or a directory of JSON files
    knowledge_path: str = Field(default="data", validation_alias="KNOWLEDGE_PATH")
    match_top_n: int = Field(default=5, ge=1, validation_alias="MATCH_TOP_N")

    # OpenAI
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "OPENAI_KEY"),
    )
    openai_model_text: str = Field(default="gpt-4o-mini", validation_alias="OPENAI_MODEL_TEXT")
    openai_model_vision: str = Field(default="gpt-4o-mini", validation_alias="OPENAI_MODEL_VISION")
    openai_model_transcribe: str = Field(default="whisper-1", validation_alias="OPENAI_MODEL_TRANSCRIBE")
    openai_temperature: float = Field(default=0.4, validation_alias="OPENAI_TEMPERATURE")

    # Supabase
    supabase_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"),
    )
    supabase_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_KEY", "SUPABASE_ANON_KEY"),
    )

    # Uploads (base64 images and voice notes can be large)
    max_upload_bytes: int = Field(default=25 * 1024 * 1024, validation_alias="MAX_UPLOAD_BYTES")

    @property
    def supabase_enabled(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


@lru_cache
def get_settings() -> Settings:
    return Settings()
