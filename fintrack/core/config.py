"""Application settings loaded from environment / .env file."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "fintrack"
    log_level: str = "INFO"

    # ── Security ──────────────────────────────────────────
    jwt_secret_key: str = ""  # MUST be set in production
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60

    # ── CORS ──────────────────────────────────────────────
    allowed_origins: str = "http://localhost:4200"

    # ── Cache ─────────────────────────────────────────────
    cache_sweep_interval_seconds: float = 300.0
    cache_info_entry_limit: int = 100

    # ── Performance monitoring ────────────────────────────
    slow_request_ms: int = 1000
    moderate_request_ms: int = 500
    low_efficiency_threshold: int = 50
    query_analysis_cache_seconds: int = 300


@lru_cache
def get_settings() -> Settings:
    return Settings()
