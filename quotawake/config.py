from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from QUOTAWAKE_* environment variables / .env file."""

    # Where state.json, credentials.json and the model cache live
    data_dir: str = "~/.quotawake"
    log_level: str = "INFO"

    # Cloud Code backend
    cloudcode_base_url: str = "https://cloudcode-pa.googleapis.com"
    request_timeout_seconds: float = 30.0

    # OAuth refresh (client credentials are never committed; set via env)
    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_client_id: str = ""
    oauth_client_secret: str = ""

    # Reset detection
    reset_cooldown_minutes: int = 10
    reset_safety_margin_minutes: int = 2
    quota_check_interval_seconds: int = 300

    # Dispatch
    max_trigger_concurrency: int = 4
    default_model: str = "gemini-3-flash"
    default_prompt: str = "hi"

    # History and model cache retention
    history_max_records: int = 40
    history_max_days: int = 7
    model_cache_ttl_hours: int = 12

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="QUOTAWAKE_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings."""
    return Settings()
