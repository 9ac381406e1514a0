"""Application configuration loaded from environment variables."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "healthsync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Scoring backend ---
    scoring_api_url: str = "http://localhost:8080/api"
    scoring_api_key: str = ""
    http_timeout_s: float = 10.0

    # --- State persistence ---
    state_backend: Literal["json", "postgres"] = "json"
    state_path: str = ".healthsync"  # directory for the json backend
    database_url: str = ""  # asyncpg DSN for the postgres backend
    state_key: str = "default"

    # --- Device / user ---
    device_timezone: str = ""  # IANA name; empty = host local zone
    user_id: str | None = None  # signed-in user; None = local-only mode
    default_provider: str | None = None
    background_sync: bool = True

    # --- Providers ---
    healthkit_bridge_url: str = ""
    oura_access_token: str = ""

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
