"""Application settings loaded from environment variables.

Environment Configuration:
    HARMONY_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: PostgreSQL connection string (required)
    HARMONY_INTERNAL_SECRET: Internal API secret (required in staging/prod)

Redis / Celery Configuration:
    REDIS_URL: Redis connection string (worker broker + trigger wake signal)
    CELERY_BROKER_URL: Celery broker URL (defaults to REDIS_URL)
    CELERY_RESULT_BACKEND: Celery result backend URL (defaults to REDIS_URL)

Rewrite Provider Configuration:
    REWRITE_PROVIDER: Batch provider backend (openai | stub)
    OPENAI_REWRITE_API_KEY: API key used for batch submit + collect (required for openai)
    OPENAI_BASE_URL: Provider base URL (defaults to https://api.openai.com)
    REWRITE_PROVIDER_TIMEOUT_S: Per-call timeout for provider HTTP calls

Classifier Configuration:
    CLASSIFIER_URL: Complaint classifier service endpoint
    CLASSIFIER_SHARED_SECRET: Secret sent to the classifier service
    CLASSIFIER_TIMEOUT_MS: Classifier call timeout, clamped to [2000, 30000]
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class RewriteProviderKind(str, Enum):
    """Batch provider backends the worker can talk to."""

    OPENAI = "openai"
    STUB = "stub"


class Settings(BaseSettings):
    """Application configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - DATABASE_URL is always required
    - HARMONY_INTERNAL_SECRET is required in staging and prod only
    - OPENAI_REWRITE_API_KEY is required in staging and prod when REWRITE_PROVIDER=openai
    """

    harmony_env: Environment = Field(default=Environment.LOCAL, alias="HARMONY_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]
    harmony_internal_secret: str | None = Field(default=None, alias="HARMONY_INTERNAL_SECRET")

    # Redis / Celery settings
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")

    # Batch provider
    rewrite_provider: RewriteProviderKind = Field(
        default=RewriteProviderKind.OPENAI, alias="REWRITE_PROVIDER"
    )
    openai_rewrite_api_key: str | None = Field(default=None, alias="OPENAI_REWRITE_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com", alias="OPENAI_BASE_URL")
    rewrite_provider_timeout_s: float = Field(default=60.0, alias="REWRITE_PROVIDER_TIMEOUT_S")

    # Classifier service
    classifier_url: str | None = Field(default=None, alias="CLASSIFIER_URL")
    classifier_shared_secret: str | None = Field(default=None, alias="CLASSIFIER_SHARED_SECRET")
    classifier_timeout_ms: int = Field(default=8_000, alias="CLASSIFIER_TIMEOUT_MS")

    # Tick sizing
    submit_batch_max_jobs: int = Field(default=100, alias="SUBMIT_BATCH_MAX_JOBS")
    collect_max_batches: int = Field(default=10, alias="COLLECT_MAX_BATCHES")
    trigger_pop_limit: int = Field(default=20, alias="TRIGGER_POP_LIMIT")
    trigger_max_attempts: int = Field(default=10, alias="TRIGGER_MAX_ATTEMPTS")

    # Watchdog / terminalizer
    trigger_stale_after_s: int = Field(default=600, alias="TRIGGER_STALE_AFTER_S")  # 10 minutes
    trigger_stale_retry_delay_s: int = Field(default=30, alias="TRIGGER_STALE_RETRY_DELAY_S")
    trigger_sweep_limit: int = Field(default=200, alias="TRIGGER_SWEEP_LIMIT")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure environment-specific settings are present."""
        if self.harmony_env in (Environment.STAGING, Environment.PROD):
            if not self.harmony_internal_secret:
                raise ValueError(
                    f"HARMONY_INTERNAL_SECRET is required for HARMONY_ENV={self.harmony_env.value}"
                )
            if (
                self.rewrite_provider == RewriteProviderKind.OPENAI
                and not self.openai_rewrite_api_key
            ):
                raise ValueError(
                    f"OPENAI_REWRITE_API_KEY is required for HARMONY_ENV={self.harmony_env.value}"
                )

        if self.trigger_max_attempts < 1:
            raise ValueError("TRIGGER_MAX_ATTEMPTS must be at least 1")

        return self

    @property
    def requires_internal_header(self) -> bool:
        """Whether internal routes must include the internal secret header."""
        return self.harmony_env in (Environment.STAGING, Environment.PROD)

    @property
    def effective_celery_broker_url(self) -> str | None:
        """Return Celery broker URL, falling back to REDIS_URL if not set."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        """Return Celery result backend URL, falling back to REDIS_URL if not set."""
        return self.celery_result_backend or self.redis_url

    @property
    def effective_classifier_timeout_s(self) -> float:
        """Classifier timeout in seconds, clamped to [2, 30]."""
        return min(max(self.classifier_timeout_ms, 2_000), 30_000) / 1000.0


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
