"""Configuration management for Attune."""

import os
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ATTUNE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Runtime environment (development, staging, production)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # PostgreSQL configuration
    postgres_host: str = Field(default="localhost", description="PostgreSQL host")
    postgres_port: int = Field(default=5432, description="PostgreSQL port")
    postgres_user: str = Field(default="attune", description="PostgreSQL user")
    postgres_password: SecretStr = Field(
        default=SecretStr("attune_dev"), description="PostgreSQL password"
    )
    postgres_db: str = Field(default="attune", description="PostgreSQL database name")
    postgres_pool_size: int = Field(default=10, description="Connection pool size")
    postgres_max_overflow: int = Field(default=20, description="Max overflow connections")

    # Redis (arq job queue)
    redis_host: str = Field(default="localhost", description="Redis host for the job queue")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_password: str | None = Field(default=None, description="Redis password")
    redis_jobs_db: int = Field(default=1, ge=0, le=15, description="Redis database for jobs")

    # Classification / embedding capability
    openai_api_key: SecretStr = Field(
        default=SecretStr(""), description="OpenAI API key for classification and embeddings"
    )
    chat_model: str = Field(default="gpt-4o-mini", description="Model used for classification")
    embedding_model: str = Field(
        default="text-embedding-3-small",
        description="OpenAI embedding model",
    )
    embedding_dimensions: int = Field(default=1536, description="Embedding vector dimensions")
    capability_timeout_seconds: float = Field(
        default=30.0, gt=0, le=300, description="Timeout for a single classify/embed call"
    )

    # Sanitizer
    max_content_chars: int = Field(
        default=1024 * 1024, ge=1024, description="Hard cap on text length before processing"
    )
    min_content_chars: int = Field(
        default=50, ge=0, description="Below this length content is flagged as too short"
    )

    # Discovery and fetch
    fetch_timeout_seconds: float = Field(default=5.0, gt=0, le=60, description="Per-URL timeout")
    fetch_max_bytes: int = Field(
        default=1024 * 1024, ge=1024, description="Maximum response body size"
    )
    fetch_concurrency: int = Field(default=10, ge=1, le=100, description="Parallel fetches")
    fetch_user_agent: str = Field(
        default="AttuneCrawler/1.0", description="User-Agent header for discovery and fetch"
    )
    thin_content_words: int = Field(
        default=50, ge=0, description="Pages at or below this word count are not extracted"
    )
    crawl_max_pages: int = Field(default=50, ge=1, le=1000, description="BFS crawl page cap")
    crawl_max_depth: int = Field(default=2, ge=0, le=10, description="BFS crawl link depth")

    # Extraction
    extraction_workers: int = Field(default=4, ge=1, le=64, description="Worker pool size")
    claim_timeout_seconds: int = Field(
        default=600, ge=30, description="Claimed extractions older than this may be reclaimed"
    )
    behavior_confidence_threshold: float = Field(
        default=0.6, ge=0, le=1, description="Minimum confidence to produce a suggestion"
    )
    fragment_min_words: int = Field(default=40, ge=1, description="Minimum words per fragment")
    fragment_max_words: int = Field(default=220, ge=10, description="Maximum words per fragment")

    # Confidence gate
    gate_warning_threshold: float = Field(
        default=0.5, ge=0, le=1, description="Confidence below this is a low-confidence event"
    )
    gate_recovery_threshold: float = Field(
        default=0.8, ge=0, le=1, description="Confidence at or above this recovers health"
    )
    gate_penalty: float = Field(default=5.0, ge=0, le=100, description="Health lost per event")
    gate_recovery_step: float = Field(
        default=1.0, ge=0, le=100, description="Health regained per high-confidence event"
    )
    gate_health_floor: float = Field(
        default=40.0, ge=0, le=100, description="Health below this fails the gate"
    )
    gate_warning_clear: float = Field(
        default=80.0, ge=0, le=100, description="Health at which WARNING returns to ACTIVE"
    )
    gate_drift_ceiling: int = Field(
        default=5, ge=1, description="Drift events within the window that fail the gate"
    )
    gate_drift_window_hours: int = Field(default=24, ge=1, description="Rolling drift window")
    gate_low_streak_limit: int = Field(
        default=3, ge=1, description="Consecutive low-confidence chat answers counted as drift"
    )
    gate_materiality: float = Field(
        default=0.5, ge=0, le=1, description="Profile change distance that counts as drift"
    )
    auto_apply_enabled: bool = Field(
        default=False, description="Apply high-confidence suggestions without review"
    )
    auto_apply_confidence: float = Field(
        default=0.9, ge=0, le=1, description="Minimum confidence for automatic application"
    )

    # Retrieval
    retrieval_top_k: int = Field(default=3, ge=1, le=20, description="Fragments per answer")
    retrieval_similarity_floor: float = Field(
        default=0.6, ge=0, le=1, description="Minimum cosine similarity for grounding"
    )
    retrieval_snippet_chars: int = Field(default=1500, ge=100, description="Per-fragment cap")
    retrieval_context_chars: int = Field(default=4000, ge=100, description="Total context cap")
    missed_question_threshold: float = Field(
        default=0.65, ge=0, le=1, description="Answers below this confidence are logged as missed"
    )

    # Coverage and brand
    coverage_min_classify_words: int = Field(
        default=300,
        ge=0,
        description="Unmatched pages shorter than this are not sent to the classifier",
    )
    brand_min_sample_chars: int = Field(
        default=500, ge=1, description="Minimum sampled page text for brand detection"
    )

    # Connection lease
    lease_stale_seconds: int = Field(
        default=900, ge=10, description="A lease older than this may be taken over"
    )

    @model_validator(mode="after")
    def fallback_api_keys(self) -> "Settings":
        """Fall back to the provider's conventional env var for the API key."""
        if not self.openai_api_key.get_secret_value():
            fallback = os.environ.get("OPENAI_API_KEY", "")
            if fallback:
                object.__setattr__(self, "openai_api_key", SecretStr(fallback))
        return self

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Prevent insecure settings in production."""
        if self.environment == "production":
            if self.postgres_password.get_secret_value() == "attune_dev":
                raise ValueError(
                    "CRITICAL: Default PostgreSQL password 'attune_dev' is forbidden in production. "
                    "Set ATTUNE_POSTGRES_PASSWORD to a secure value."
                )
        return self

    @property
    def postgres_url(self) -> str:
        """Async PostgreSQL connection URL."""
        password = self.postgres_password.get_secret_value()
        return f"postgresql+asyncpg://{self.postgres_user}:{password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"


settings = Settings()
