"""Runtime settings for the pilot flag service."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "pilot-flags"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json|text

    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_ENABLED: bool = True

    # Snapshot TTL; bounds how long a reader may see a stale flag
    FLAG_CACHE_TTL_SECONDS: int = 1800

    FLAG_STORE_BACKEND: str = "memory"  # memory|sqlite
    FLAG_STORE_PATH: str = "data/feature_flags.db"
    SEED_DEMO_FLAGS: bool = True

    CORS_ORIGINS: list[str] = ["*"]

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
    }


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings()
    return _settings_cache


def reset_settings() -> None:
    """Drop the memoized settings (tests change env between cases)."""
    global _settings_cache
    _settings_cache = None
