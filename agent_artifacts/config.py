"""
Configuration management for Agent Artifacts.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Agent Artifacts")
    debug: bool = Field(default=False)
    environment: str = Field(default="development")

    # API
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_workers: int = Field(default=1)

    # Database
    database_url: str = Field(default="sqlite:///./agent_artifacts.db")
    db_pool_size: int = Field(default=10, description="PostgreSQL connection pool size")
    db_max_overflow: int = Field(default=20)
    db_read_retry_attempts: int = Field(
        default=3,
        description="Attempts for read-only lookups against the backing store. Writes are never retried.",
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    # Providers
    openai_api_key: Optional[str] = Field(default=None)
    openai_base_url: str = Field(default="https://api.openai.com/v1")
    distill_provider: str = Field(default="openai", description="openai or stub")
    embedding_provider: str = Field(default="openai", description="openai or stub")
    distill_model: str = Field(default="gpt-4o-mini")
    embedding_model: str = Field(default="text-embedding-3-small")
    embedding_dimensions: int = Field(default=1536)
    provider_timeout_seconds: float = Field(default=30.0)

    # Embedding worker
    worker_poll_interval: int = Field(default=5)
    worker_batch_size: int = Field(default=10)
    worker_max_batch_size: int = Field(default=50)
    worker_stale_job_seconds: Optional[int] = Field(
        default=None,
        description="Requeue jobs stuck in 'processing' longer than this. Unset disables the sweep.",
    )

    # Atom chunking
    chunk_max_chars: int = Field(default=1000)

    # Retrieval
    search_default_limit: int = Field(default=20)
    search_tie_epsilon: float = Field(default=1e-4)
    search_min_similarity: float = Field(default=1e-6)


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
