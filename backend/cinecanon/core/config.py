import os
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_database_url() -> str:
    user = os.getenv("POSTGRES_USER", "cinecanon")
    password = os.getenv("POSTGRES_PASSWORD", "cinecanon")
    db = os.getenv("POSTGRES_DB", "cinecanon")
    host = os.getenv("POSTGRES_HOST", "db")
    return f"postgresql+psycopg2://{user}:{password}@{host}:5432/{db}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CINECANON_", extra="ignore")

    database_url: str = Field(default_factory=_default_database_url)
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Cache key space
    supported_decades: List[int] = [1920, 1930, 1940, 1950, 1960, 1970, 1980, 1990, 2000, 2010, 2020]
    cache_max_age_hours: int = 168
    prediction_chunk_size: int = 25
    algorithm_version: str = "criteria-v1"

    # Staleness ledger
    ledger_retention_days: int = 30

    # Running refresh jobs older than this are failed by the periodic check
    stale_job_hours: int = 6

    # Refresh recommendation thresholds
    recommend_total_changes: int = 500
    recommend_festival_changes: int = 10
    recommend_age_days: int = 30
    suggest_total_changes: int = 100
    suggest_age_days: int = 7
    suggest_age_total_changes: int = 50

    # Confidence tiers (likelihood percentage)
    high_confidence_threshold: float = 80.0
    medium_confidence_threshold: float = 50.0

    # Historical validation
    validation_cache_ttl: int = 86400  # 24h
    min_validation_decade: int = 1920

    default_profile_name: str = "Balanced"


settings = Settings()
