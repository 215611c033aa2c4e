from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables can come from:
    - docker-compose.yml environment section
    - .env file (for secrets like API keys)
    - System environment

    Engine constants (auto-link gates, classifier thresholds) live here too
    so ops can tune them without a deploy.
    """

    # Environment
    environment: str = "development"

    # PostgreSQL (from docker-compose)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "rdtrail_user"
    postgres_password: str = "rdtrail_pass"
    postgres_db: str = "rdtrail"
    database_url: Optional[str] = Field(default=None, validate_default=True)

    # Redis (job queue + rate buckets)
    redis_url: str = "redis://localhost:6379"

    # OpenAI (from .env)
    openai_api_key: str = ""
    classifier_model: str = "gpt-4o-mini"

    # Auto-link gates
    autolink_min_content_length: int = 20
    autolink_recency_window_days: int = 60
    autolink_backfill_days: int = 14
    autolink_cooldown_hours: float = 24
    autolink_retry_hours: float = 1
    autolink_score_threshold: float = 0.10
    autolink_daily_limit: int = 100
    autolink_max_items_per_run: int = 25
    autolink_top_terms: int = 5

    # Step classification
    classify_min_length: int = 10
    classify_confidence_threshold: float = 0.7

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra env vars

    @field_validator('database_url', mode='before')
    @classmethod
    def construct_database_url(cls, v, info):
        """Construct database URL from components if not explicitly set"""
        if v:
            return v

        data = info.data
        host = data.get('postgres_host', 'localhost')
        port = data.get('postgres_port', 5432)
        user = data.get('postgres_user', 'rdtrail_user')
        password = data.get('postgres_password', 'rdtrail_pass')
        db = data.get('postgres_db', 'rdtrail')

        return f"postgresql://{user}:{password}@{host}:{port}/{db}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
