"""Application configuration loaded from environment variables."""

from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    # App
    app_name: str = "RiskWatch"
    app_env: str = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Auth
    secret_key: str = "riskwatch-dev-key-change-me"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7  # 7 days

    # Database
    database_url: str = "sqlite+aiosqlite:///./riskwatch.db"

    @field_validator("database_url", mode="before")
    @classmethod
    def fix_db_url(cls, v: str) -> str:
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql+asyncpg://", 1)
        if v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v

    # Reputation / fraud API (IPQS-style phone lookup)
    reputation_api_url: str = "https://www.ipqualityscore.com/api/json/phone"
    reputation_api_key: str = ""
    reputation_cache_days: int = 7

    # Profile source
    profile_api_url: str = ""
    profile_api_key: str = ""

    # Collectors
    collector_timeout_seconds: float = 10.0
    collector_concurrency: int = 8

    # Monitoring
    scheduler_tick_seconds: int = 60
    check_workers: int = 4
    capture_on_add: bool = True
    lease_ttl_seconds: int = 300
    lease_retry_delay_seconds: float = 0.5
    alerting_cadence: str = "unchanged"  # unchanged | accelerated
    error_backoff_enabled: bool = False
    error_backoff_max_factor: int = 8
    alert_dedup_checks: int = 0  # 0 disables suppression

    # Batch
    batch_item_estimate_seconds: float = 3.0
    batch_max_items: int = 500

    model_config = {"env_file": None}


@lru_cache
def get_settings() -> Settings:
    return Settings()
