"""
Configuration settings for the cohort service.

Reads credentials from the project .env file and provides typed settings.
"""

from pathlib import Path
from functools import lru_cache

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Resolve paths
PROJECT_ROOT = Path(__file__).parent.parent
ENV_FILE = PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database - fact store, jobs, templates, features, links
    database_url: str = Field(
        default="sqlite:///./cohort_engine.db",
        alias="DATABASE_URL",
        description="SQLAlchemy connection URL"
    )

    # Redis for result cache and online features
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection URL for cohort cache and hot features"
    )

    # Application settings
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Result cache
    cache_backend: str = Field(
        default="redis",
        alias="COHORT_CACHE_BACKEND",
        description="One of: redis, memory, none"
    )
    cohort_cache_ttl_seconds: int = Field(
        default=120,
        alias="COHORT_CACHE_TTL",
        description="TTL for cached cohort results"
    )

    # Query caps
    default_query_limit: int = Field(default=500, description="Limit used when none is requested")
    max_query_limit: int = Field(default=5000, description="Hard cap on scan scope")
    patient_id_sample_cap: int = Field(default=500, description="Max patient ids returned")
    record_sample_cap: int = Field(default=200, description="Max detail records sampled")
    timeline_default_limit: int = Field(default=200, description="Default drilldown timeline length")
    linkage_lookup_limit: int = Field(default=25, description="Links fetched per drilldown")

    # Filter policy
    strict_filters: bool = Field(
        default=False,
        alias="COHORT_STRICT_FILTERS",
        description="Reject queries with unresolvable clauses instead of dropping them"
    )

    # Feature store
    feature_online_prefix: str = Field(default="features:", alias="FEATURE_ONLINE_PREFIX")
    feature_cache_ttl_seconds: int = Field(default=300, alias="FEATURE_CACHE_TTL")

    # Materialization worker pool
    materialize_workers: int = Field(
        default=1,
        alias="FEATURE_MATERIALIZE_WORKERS",
        description="Max concurrent materialization jobs"
    )

    @computed_field
    @property
    def effective_materialize_workers(self) -> int:
        """Worker slots, never less than one."""
        return self.materialize_workers if self.materialize_workers > 0 else 1

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience accessors
settings = get_settings()
