"""
Configuration management for the tvrelay backend.
Uses pydantic-settings for environment variable loading.
"""
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    app_name: str = "tvrelay"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000

    # CORS Configuration
    cors_origins: list[str] = ["*"]

    # Rate Limiting (playlist endpoint only, the proxy serves segments)
    rate_limit_per_minute: int = 100

    # Playlist source
    playlist_listing_url: str = "https://api.github.com/repos/brodatv1/lite/contents"
    playlist_payload_base: str = "https://raw.githubusercontent.com/brodatv1/lite/main"
    playlist_categories: dict[str, str] = {
        "indonesia": "ID.json",
        "event": "EV.json",
    }
    playlist_fetch_timeout: float = 30.0

    # Cache Configuration
    cache_ttl_seconds: int = 300  # 5 minutes

    # Offset scan bounds for obfuscated payloads
    scan_max_offset: int = 1000
    scan_common_offset: int = 98

    # Upstream stream timeouts
    upstream_connect_timeout: float = 15.0
    upstream_read_timeout: float = 30.0

    # Last good playlist snapshot ("" disables persistence)
    snapshot_db_path: str = "data/tvrelay_snapshot.db"

    # Channels whose origin only answers the Android app fingerprint
    android_channel_keywords: list[str] = [
        "indosiar", "sctv", "moji", "mentari", "bri",
        "liga 1", "piala", "superleague", "vidio",
    ]

    # Pydantic V2 configuration
    model_config = SettingsConfigDict(env_prefix="TVRELAY_", env_file=".env")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
