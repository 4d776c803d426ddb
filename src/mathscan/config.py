"""
Mathscan Configuration
Pydantic Settings for all configurable options.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables or .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Recognition Service ---
    gemini_api_key: str = Field(default="", validation_alias="GEMINI_API_KEY")
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    request_timeout: float = 120.0  # Vision calls are slow

    # --- Batch Processing ---
    concurrency_limit: int = Field(default=3, ge=1)  # Max in-flight recognition calls
    verify_credentials_before_run: bool = True
    max_image_size_mb: int = 20

    # --- Caller Policy ---
    auto_analyze_images: bool = False  # Start a run as soon as images are added

    # --- Default Analysis Options ---
    revise_text: bool = False
    bold_keywords: bool = True
    suggest_hints: bool = False


# Global settings instance
settings = Settings()
