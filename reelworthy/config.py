"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="ReelWorthy", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    youtube_api_url: HttpUrl = Field(
        default="https://www.googleapis.com/youtube/v3", alias="YOUTUBE_API_URL"
    )
    youtube_api_key: str | None = Field(default=None, alias="YOUTUBE_API_KEY")
    youtube_access_token: str | None = Field(
        default=None, alias="YOUTUBE_ACCESS_TOKEN"
    )

    gemini_api_url: HttpUrl = Field(
        default="https://generativelanguage.googleapis.com", alias="GEMINI_API_URL"
    )
    gemini_api_key: str | None = Field(default=None, alias="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-2.5-flash", alias="GEMINI_MODEL")
    deep_thinking: bool = Field(default=False, alias="DEEP_THINKING")

    sync_playlist_ids: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), alias="SYNC_PLAYLIST_IDS"
    )
    include_subscription_feed: bool = Field(
        default=False, alias="INCLUDE_SUBSCRIPTION_FEED"
    )
    sync_interval_seconds: int = Field(
        default=21_600, alias="SYNC_INTERVAL", ge=900
    )
    sync_on_startup: bool = Field(default=False, alias="SYNC_ON_STARTUP")

    page_size: int = Field(default=50, alias="PAGE_SIZE", ge=1, le=50)
    detail_batch_size: int = Field(
        default=50, alias="DETAIL_BATCH_SIZE", ge=1, le=50
    )
    feed_items_per_source: int = Field(
        default=10, alias="FEED_ITEMS_PER_SOURCE", ge=1, le=50
    )
    feed_total_limit: int = Field(
        default=100, alias="FEED_TOTAL_LIMIT", ge=1, le=500
    )
    prompt_description_chars: int = Field(
        default=200, alias="PROMPT_DESCRIPTION_CHARS", ge=0, le=2_000
    )
    search_history_limit: int = Field(
        default=100, alias="SEARCH_HISTORY_LIMIT", ge=1, le=1_000
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./reelworthy.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("sync_playlist_ids", mode="before")
    @classmethod
    def _parse_playlist_ids(cls, value: object) -> tuple[str, ...]:
        """Normalise playlist selections from environment values."""

        if value is None:
            return ()
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("SYNC_PLAYLIST_IDS must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            if entry and entry not in cleaned:
                cleaned.append(entry)
        return tuple(cleaned)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
