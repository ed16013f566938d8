"""
backend/metegol/config.py

Purpose:
    Central settings loading for the fixture cache service.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"

_DEFAULT_SYNC_LEAGUES = "128,129,130,2,3,848,140,39,135,78,61,13,11,71,73,15"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "metegol"
    MONGO_USE_TRANSACTIONS: bool = False  # requires a replica set
    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Upstream (api-football v3)
    FOOTBALL_API_KEY: str = ""
    FOOTBALL_API_BASE_URL: str = "https://v3.football.api-sports.io"
    FOOTBALL_API_TIMEOUT_SECONDS: float = 15.0
    FOOTBALL_API_MAX_RETRIES: int = 2
    FOOTBALL_API_RETRY_BASE_DELAY: float = 2.0
    FOOTBALL_API_RATE_LIMIT_RPM: int = 10
    FOOTBALL_API_DAILY_QUOTA: int = 7500

    # Background sync
    SYNC_DEFAULT_LEAGUES: str = _DEFAULT_SYNC_LEAGUES
    SYNC_QUOTA_ABORT_PCT: float = 90.0
    SYNC_QUOTA_DETAILS_PCT: float = 60.0  # morning window skips details above this
    SYNC_AUTOMATION_ENABLED: bool = False
    SYNC_INTERVAL_MINUTES: int = 30
    SYNC_HISTORICAL_BATCH_PAUSE_SECONDS: float = 0.6

    # Detail enrichment
    ENRICH_BATCH_SIZE: int = 5
    ENRICH_BATCH_PAUSE_SECONDS: float = 0.2

    # Negative-result cache (memory tier)
    NEGATIVE_CACHE_MEMORY_TTL_SECONDS: int = 3600
    NEGATIVE_CACHE_CAPACITY: int = 5000

    # Shared secret for /api/admin routes
    ADMIN_API_KEY: str = ""

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }

    @property
    def sync_default_leagues(self) -> list[int]:
        return [int(part) for part in self.SYNC_DEFAULT_LEAGUES.split(",") if part.strip()]


settings = Settings()
