"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Pulsecast"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Postgres (durable profile store) ---
    database_url: str = ""  # empty = in-memory profile store

    # --- Redis (live heartbeats + ranking sorted set) ---
    redis_url: str = ""  # empty = in-memory stores
    redis_password: str | None = None
    ranking_key: str = "ranking:maxConnections"

    # --- Push (FCM HTTP v1) ---
    fcm_project_id: str = ""
    fcm_access_token: str = ""  # short-lived OAuth token, rotated outside the app
    push_timeout_seconds: float = 10.0
    push_batch_size: int = 500

    # --- Relay (wearable → backend) ---
    relay_endpoint_url: str = "http://localhost:8000/api/v1/heartbeats/relay"

    # --- Admin ---
    admin_secret: str = ""  # empty disables the admin endpoints

    # --- Notification dispatch ---
    cooldown_window_seconds: int = 300

    # --- Reaper ---
    retention_window_seconds: int = 3600
    reaper_hour_utc: int = 18  # 03:00 JST
    reaper_minute: int = 0

    # --- Sensor acquisition ---
    sensor_timeout_seconds: float = 15.0
    send_tick_interval_seconds: float = 3.0
    timeout_tick_interval_seconds: float = 5.0
    max_consecutive_skips: int = 5

    # --- Ranking ---
    ranking_read_cache_ttl_seconds: int = 300
    ranking_sync_minute: int = 59  # runs just before the top of the hour
    ranking_default_limit: int = 100

    # --- Scheduler ---
    scheduler_enabled: bool = True

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
