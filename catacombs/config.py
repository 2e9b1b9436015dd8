"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .exceptions import ConfigurationError

DEFAULT_SHEET_URL = (
    "https://docs.google.com/spreadsheets/d/"
    "1_kDej_nXLnz1REls5jDyqjIZU5z_fsN4mHap60_uvCI/export?format=csv"
)
DEFAULT_SNAPSHOT_PATH = Path(__file__).resolve().parent / "data" / "snapshot.csv"


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Catacombs", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    sheet_csv_urls: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(DEFAULT_SHEET_URL,), alias="SHEET_CSV_URLS"
    )
    sheet_snapshot_path: Path = Field(
        default=DEFAULT_SNAPSHOT_PATH, alias="SHEET_SNAPSHOT_PATH"
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_bearer: str | None = Field(default=None, alias="TMDB_BEARER")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_language: str = Field(default="es-ES", alias="TMDB_LANGUAGE")
    tmdb_fallback_language: str = Field(
        default="en-US", alias="TMDB_FALLBACK_LANGUAGE"
    )

    omdb_api_key: str | None = Field(default=None, alias="OMDB_API_KEY")
    omdb_api_url: HttpUrl = Field(
        default="https://www.omdbapi.com/", alias="OMDB_API_URL"
    )
    wikipedia_api_url: HttpUrl = Field(
        default="https://en.wikipedia.org/w/api.php", alias="WIKIPEDIA_API_URL"
    )

    database_url: str = Field(
        default="sqlite:///./catacombs.db", alias="DATABASE_URL"
    )

    max_requests_per_second: float = Field(
        default=40.0, alias="MAX_REQUESTS_PER_SECOND", gt=0, le=1_000
    )
    provider_cache_days: int = Field(
        default=180, alias="PROVIDER_CACHE_DAYS", ge=1
    )
    sheet_cache_hours: int = Field(default=24, alias="SHEET_CACHE_HOURS", ge=1)
    negative_cache_hours: int = Field(
        default=24, alias="NEGATIVE_CACHE_HOURS", ge=1
    )
    director_cache_days: int = Field(default=7, alias="DIRECTOR_CACHE_DAYS", ge=1)
    http_timeout_seconds: float = Field(default=15.0, alias="HTTP_TIMEOUT", gt=0)

    @field_validator("sheet_csv_urls", mode="before")
    @classmethod
    def _parse_sheet_urls(cls, value: object) -> tuple[str, ...]:
        """Accept a comma separated list or an iterable of source URLs."""

        if value is None:
            return (DEFAULT_SHEET_URL,)
        if isinstance(value, str):
            raw_values = [part.strip() for part in value.split(",")]
        elif isinstance(value, Iterable):
            raw_values = [str(part).strip() for part in value]
        else:
            raise TypeError("SHEET_CSV_URLS must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            if not entry:
                continue
            if not entry.startswith(("http://", "https://")):
                raise ValueError("Sheet sources must be http(s) URLs")
            if entry not in cleaned:
                cleaned.append(entry)
        return tuple(cleaned)

    @field_validator("tmdb_api_key", "tmdb_bearer", "omdb_api_key", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def provider_cache_seconds(self) -> float:
        return self.provider_cache_days * 86_400

    @property
    def sheet_cache_seconds(self) -> float:
        return self.sheet_cache_hours * 3_600

    @property
    def negative_cache_seconds(self) -> float:
        return self.negative_cache_hours * 3_600

    @property
    def director_cache_seconds(self) -> float:
        return self.director_cache_days * 86_400

    def require_tmdb_credentials(self) -> None:
        """Raise when neither a TMDb API key nor a bearer token is configured."""

        if not (self.tmdb_api_key or self.tmdb_bearer):
            raise ConfigurationError(
                "TMDB_API_KEY or TMDB_BEARER must be configured for TMDb lookups"
            )

    def require_omdb_credentials(self) -> None:
        """Raise when the OMDb API key is missing."""

        if not self.omdb_api_key:
            raise ConfigurationError("OMDB_API_KEY must be configured for OMDb lookups")

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
