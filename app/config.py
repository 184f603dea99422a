"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Iterable, Literal

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_GENRES: tuple[str, ...] = ("Drama", "Action", "Comedy")


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="ReelState", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./reelstate.db", alias="DATABASE_URL"
    )

    catalog_api_url: HttpUrl | None = Field(default=None, alias="CATALOG_API_URL")
    catalog_file: str | None = Field(default=None, alias="CATALOG_FILE")

    history_capacity: int = Field(
        default=100, alias="HISTORY_CAPACITY", ge=1, le=1_000
    )
    completion_threshold: float = Field(
        default=90.0, alias="COMPLETION_THRESHOLD", gt=0, le=100
    )
    continue_watching_min: float = Field(
        default=5.0, alias="CONTINUE_WATCHING_MIN", ge=0, le=100
    )
    continue_watching_max: float = Field(
        default=90.0, alias="CONTINUE_WATCHING_MAX", ge=0, le=100
    )
    progress_tolerance_seconds: float = Field(
        default=5.0, alias="PROGRESS_TOLERANCE_SECONDS", ge=0
    )

    top_picks_min_rating: float = Field(
        default=7.0, alias="TOP_PICKS_MIN_RATING", ge=0, le=10
    )
    default_genres: tuple[str, ...] = Field(
        default=DEFAULT_GENRES, alias="DEFAULT_GENRES"
    )
    recommendation_shuffle: bool = Field(
        default=True, alias="RECOMMENDATION_SHUFFLE"
    )
    recommendation_seed: int | None = Field(
        default=None, alias="RECOMMENDATION_SEED"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("default_genres", mode="before")
    @classmethod
    def _parse_default_genres(cls, value: object) -> tuple[str, ...]:
        """Accept comma separated genre lists from environment values."""

        if value is None:
            return DEFAULT_GENRES
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("DEFAULT_GENRES must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            if entry and entry not in cleaned:
                cleaned.append(entry)
        if not cleaned:
            return DEFAULT_GENRES
        return tuple(cleaned)

    @model_validator(mode="after")
    def _check_continue_watching_window(self) -> "Settings":
        """The continue-watching window must be a non-empty open interval."""

        if self.continue_watching_min >= self.continue_watching_max:
            raise ValueError(
                "CONTINUE_WATCHING_MIN must be lower than CONTINUE_WATCHING_MAX"
            )
        return self

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
