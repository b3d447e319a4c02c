"""Configuration management for the Maestro tutoring engine."""

from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Generation Service Configuration
    gemini_api_key: str = ""
    text_model: str = "gemini-2.5-flash"
    aux_model: str = "gemini-3-flash-preview"
    image_model: str = "gemini-2.5-flash-image"

    # Server Configuration
    host: str = "127.0.0.1"
    port: int = 8000
    data_dir: str = "maestro_data"

    # History / Window Configuration
    max_media_to_keep: int = 10
    max_visible_messages: int = 50
    context_section_max_chars: int = 10000
    profile_max_chars: int = 1200
    raw_response_max_chars: int = 200000

    # Enrichment Configuration
    suggestion_max_retries: int = 2
    suggestion_backoff_ms: int = 500
    suggestion_history_turns: int = 6
    image_gen_attempts: int = 3
    image_gen_retry_delay_seconds: float = 1.5
    image_gen_max_context_images: int = 3

    # Media Configuration
    camera_index: Optional[int] = None
    capture_timeout_seconds: float = 3.0
    transport_image_max_dim: int = 768
    transport_image_quality: int = 75
    upload_poll_interval_seconds: float = 1.0
    upload_poll_max_attempts: int = 10

    # Timer Configuration
    reengagement_default_seconds: int = 60
    reengagement_min_seconds: int = 5
    reengagement_countdown_seconds: float = 5.0
    user_activity_grace_seconds: float = 3.0
    auto_send_stable_seconds: float = 1.5

    @model_validator(mode="after")
    def _clamp_budgets(self) -> "Settings":
        """Keep budgets usable even when the environment sets nonsense."""
        if self.max_media_to_keep < 0:
            self.max_media_to_keep = 0
        if self.reengagement_default_seconds < self.reengagement_min_seconds:
            self.reengagement_default_seconds = self.reengagement_min_seconds
        return self

    @property
    def has_api_key(self) -> bool:
        """Check if a generation API key is configured."""
        return bool(self.gemini_api_key.strip())


# Global settings instance
settings = Settings()
