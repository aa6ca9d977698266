"""
Environment configuration: single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development; provider API keys
are left empty so premium providers fail with an authentication error
until they are configured.

Usage:
    from hazard_engine.core.config import settings
    print(settings.GLOBAL_DEADLINE_MS)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Hazard Risk Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8000",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Cache ──
    CACHE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    CACHE_KEY_PREFIX: str = "hazard"
    CACHE_DEFAULT_TTL: int = 3600  # seconds, used when an operation has no TTL
    CACHE_MAX_ENTRIES: int = 10_000  # memory backend only
    CACHE_GRID_PRECISION: int = 3  # decimal places; 3 ≈ 110 m cells

    # ── Engine defaults ──
    PROVIDER_TIMEOUT_MS: int = 8_000  # per HTTP attempt
    GLOBAL_DEADLINE_MS: int = 20_000  # whole fan-out
    RATE_LIMIT_WAIT_MS: int = 2_000  # 0 = fail fast when out of tokens
    MAX_RETRIES: int = 2
    RETRY_BACKOFF_BASE: float = 0.5  # seconds; wait = base * 2^(attempt-1)
    RETRY_BACKOFF_MAX: float = 8.0
    FALLBACK_MIN_QUALITY: float = 0.5
    HTTP_USER_AGENT: str = "hazard-risk-engine/1.0"

    # ── Providers ──
    GOV_INDEX_BASE_URL: str = "https://hazards.fema.gov/nri/api"
    COMMERCIAL_A_BASE_URL: str = "https://api.climatecheck.com/v1"
    COMMERCIAL_A_API_KEY: Optional[str] = None
    COMMERCIAL_B_BASE_URL: str = "https://api.firststreet.org/v1"
    COMMERCIAL_B_API_KEY: Optional[str] = None
    HYDRO_MONITOR_BASE_URL: str = "https://waterservices.usgs.gov/nwis"

    # Reliability weight overrides, e.g. PROVIDER_WEIGHTS='{"gov_index": 1.2}'
    PROVIDER_WEIGHTS: Dict[str, float] = {}

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
