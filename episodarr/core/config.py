"""Configuration management for Episodarr."""

from functools import lru_cache
from urllib.parse import urlparse

from pydantic import NonNegativeFloat, PositiveFloat, PositiveInt, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OMDb
    omdb_api_key: str
    omdb_base_url: str = "https://www.omdbapi.com/"

    # Database (key-value snapshots)
    database_url: str = "sqlite:///./episodarr.db"

    # Catalog client
    catalog_timeout: PositiveFloat = 15.0  # Per-request timeout in seconds
    catalog_min_interval: PositiveFloat = 0.2  # Spacing between upstream calls
    catalog_daily_limit: PositiveInt = 100_000
    catalog_max_attempts: PositiveInt = 3
    catalog_backoff_base: NonNegativeFloat = 1.0
    response_cache_ttl: PositiveInt = 3600
    response_cache_size: PositiveInt = 2048

    # Season/series cache
    cache_duration: PositiveInt = 24 * 60 * 60

    # Probing
    probe_delay: NonNegativeFloat = 0.25
    max_episodes_per_season: PositiveInt = 30
    max_consecutive_failures: PositiveInt = 3

    # Background worker
    max_seasons: PositiveInt = 20
    max_consecutive_empty_seasons: PositiveInt = 2
    season_delay: NonNegativeFloat = 0.3
    job_delay: NonNegativeFloat = 2.0
    max_job_attempts: PositiveInt = 5

    # Discovery estimates
    estimated_series_episodes: PositiveInt = 100  # Conservative guess for unknown series
    max_series_api_calls: PositiveInt = 200

    # Network settings
    # Proxy configuration in the format http://host:port or socks5://host:port
    proxy: str | None = None

    @field_validator("proxy")
    @classmethod
    def validate_proxy(cls, v: str | None) -> str | None:
        if v is None:
            return v

        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https", "socks4", "socks5", "socks5h"):
            raise ValueError(
                "Proxy must be a valid URL with scheme http/https/socks4/socks5/socks5h"
            )
        if not parsed.netloc:
            raise ValueError("Proxy must have a host and port")
        return v

    # App settings
    debug: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
