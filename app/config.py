"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .models import ProviderId

DEFAULT_EPISODE_PRIORITY: tuple[ProviderId, ...] = (
    ProviderId.KITSU,
    ProviderId.ANILIST,
    ProviderId.JIKAN,
    ProviderId.TMDB,
)
DEFAULT_CHAPTER_PRIORITY: tuple[ProviderId, ...] = (ProviderId.KITSU,)


def _parse_provider_list(
    value: object, *, setting: str, default: tuple[ProviderId, ...]
) -> tuple[ProviderId, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        raw_values = [part.strip() for part in value.split(",")]
    elif isinstance(value, Iterable):
        raw_values = [
            part.value if isinstance(part, ProviderId) else str(part).strip()
            for part in value
        ]
    else:
        raise TypeError(f"{setting} must be a string or iterable of strings")

    cleaned: list[ProviderId] = []
    for entry in raw_values:
        if not entry:
            continue
        provider = ProviderId.parse(entry)
        if provider is None:
            raise ValueError(f"Unknown provider {entry!r} in {setting}")
        if provider not in cleaned:
            cleaned.append(provider)
    if not cleaned:
        return default
    return tuple(cleaned)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="mediabridge", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./mediabridge.db", alias="DATABASE_URL"
    )

    anilist_api_url: HttpUrl = Field(
        default="https://graphql.anilist.co", alias="ANILIST_API_URL"
    )
    kitsu_api_url: HttpUrl = Field(
        default="https://kitsu.io/api/edge", alias="KITSU_API_URL"
    )
    jikan_api_url: HttpUrl = Field(
        default="https://api.jikan.moe/v4", alias="JIKAN_API_URL"
    )
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    simkl_api_url: HttpUrl = Field(
        default="https://api.simkl.com", alias="SIMKL_API_URL"
    )
    mal_api_url: HttpUrl = Field(
        default="https://api.myanimelist.net/v2", alias="MAL_API_URL"
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    simkl_client_id: str | None = Field(default=None, alias="SIMKL_CLIENT_ID")
    mal_access_token: str | None = Field(default=None, alias="MAL_ACCESS_TOKEN")

    match_confidence_threshold: float = Field(
        default=0.8, alias="MATCH_CONFIDENCE_THRESHOLD", ge=0.0, le=1.0
    )
    provider_timeout_seconds: float = Field(
        default=10.0, alias="PROVIDER_TIMEOUT", gt=0, le=120
    )
    max_concurrent_searches: int = Field(
        default=4, alias="MAX_CONCURRENT_SEARCHES", ge=1, le=16
    )
    provider_max_retries: int = Field(
        default=3, alias="PROVIDER_MAX_RETRIES", ge=0, le=10
    )

    episode_provider_priority: Annotated[tuple[ProviderId, ...], NoDecode] = Field(
        default=DEFAULT_EPISODE_PRIORITY, alias="EPISODE_PROVIDER_PRIORITY"
    )
    chapter_provider_priority: Annotated[tuple[ProviderId, ...], NoDecode] = Field(
        default=DEFAULT_CHAPTER_PRIORITY, alias="CHAPTER_PROVIDER_PRIORITY"
    )

    anilist_rate_limit: int = Field(default=90, alias="ANILIST_RATE_LIMIT", ge=1)
    kitsu_rate_limit: int = Field(default=60, alias="KITSU_RATE_LIMIT", ge=1)
    jikan_rate_limit: int = Field(default=60, alias="JIKAN_RATE_LIMIT", ge=1)
    tmdb_rate_limit: int = Field(default=240, alias="TMDB_RATE_LIMIT", ge=1)
    simkl_rate_limit: int = Field(default=60, alias="SIMKL_RATE_LIMIT", ge=1)

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("episode_provider_priority", mode="before")
    @classmethod
    def _parse_episode_priority(cls, value: object) -> tuple[ProviderId, ...]:
        return _parse_provider_list(
            value,
            setting="EPISODE_PROVIDER_PRIORITY",
            default=DEFAULT_EPISODE_PRIORITY,
        )

    @field_validator("chapter_provider_priority", mode="before")
    @classmethod
    def _parse_chapter_priority(cls, value: object) -> tuple[ProviderId, ...]:
        return _parse_provider_list(
            value,
            setting="CHAPTER_PROVIDER_PRIORITY",
            default=DEFAULT_CHAPTER_PRIORITY,
        )

    def rate_limit_for(self, provider: ProviderId) -> int:
        """Return the requests-per-minute budget for ``provider``."""

        return int(getattr(self, f"{provider.value}_rate_limit"))

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()


settings = get_settings()
