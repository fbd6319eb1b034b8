"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the stream pipeline.
"""
from dataclasses import dataclass
from typing import Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Redis Configuration (read budget)
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Strava API Configuration
    STRAVA_API_BASE: str = Field(default="https://www.strava.com/api/v3")
    # App-wide read budget per fixed window (Strava: 100 reads / 15 min)
    STRAVA_READ_WINDOW_BUDGET: int = Field(default=100, ge=1)
    STRAVA_READ_WINDOW_S: int = Field(default=900, ge=1)

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Summarization
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    STREAM_SUMMARY_MODEL: str = Field(default="gpt-4o-mini")
    STREAM_SUMMARY_MAX_TOKENS: int = Field(default=1200)

    # Stream processing budget
    STREAM_MAX_CONTEXT_TOKENS: int = Field(default=15000, ge=1)
    STREAM_TOKEN_PER_CHAR_RATIO: float = Field(default=0.25, gt=0)
    STREAM_DEFAULT_PAGE_SIZE: int = Field(default=1000, ge=1)
    STREAM_MAX_PAGE_SIZE: int = Field(default=5000, ge=100)

    # Operation log. None keeps entries in memory only.
    STREAM_OPERATION_LOG_DIR: Optional[str] = Field(default=None)
    STREAM_OPERATION_LOG_MAX_ENTRIES: int = Field(default=10000, ge=1)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")


@dataclass(frozen=True)
class StreamConfig:
    """Token budget and page limits. Built once at startup, read-only."""
    max_context_tokens: int = 15000
    token_per_char_ratio: float = 0.25
    default_page_size: int = 1000
    max_page_size: int = 5000
    resolutions: Tuple[str, ...] = ("low", "medium", "high")


def get_stream_config(source: Optional[Settings] = None) -> StreamConfig:
    """Build the frozen StreamConfig from settings."""
    s = source or settings
    return StreamConfig(
        max_context_tokens=s.STREAM_MAX_CONTEXT_TOKENS,
        token_per_char_ratio=s.STREAM_TOKEN_PER_CHAR_RATIO,
        default_page_size=s.STREAM_DEFAULT_PAGE_SIZE,
        max_page_size=s.STREAM_MAX_PAGE_SIZE,
    )


# Global settings instance
settings = Settings()
