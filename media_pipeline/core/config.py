from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables or a .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    app_name: str = "Media Pipeline API"
    app_version: str = "0.1.0"
    environment: str = "local"
    log_json: bool = False

    database_url: str = "sqlite+aiosqlite:///./media.db"

    media_root: str = "uploads"
    media_url_prefix: str = "/media"
    media_upload_max_bytes: int = 64 * 1024 * 1024

    # name:WIDTHxHEIGHT with an optional _crop suffix for cover-fit derivatives
    media_derivatives: str = "thumb:200x200_crop,small:400x,medium:800x,large:1600x"
    media_dark_brightness: float = 0.55
    media_dark_saturation: float = 0.75
    media_webp_quality: int = 82

    media_bulk_max_ids: int = 100
    media_bulk_concurrency: int = 4
    media_override_warn_on_use: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
