"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file="../.env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./aistudio.db", alias="DATABASE_URL"
    )
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Admin endpoints (reset-stuck-queue). Empty disables the bearer check.
    admin_secret: str = Field(default="", alias="ADMIN_SECRET")

    # Replicate Image Generation
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_model: str = Field(default="bytedance/seedream-4", alias="REPLICATE_MODEL")
    provider_min_dimension: int = Field(default=1024, alias="PROVIDER_MIN_DIMENSION")
    provider_max_dimension: int = Field(default=4096, alias="PROVIDER_MAX_DIMENSION")

    # Prompt LLM (OpenAI-compatible chat completions)
    llm_api_key: str = Field(default="", alias="LLM_API_KEY")
    llm_api_base: str = Field(default="https://api.x.ai/v1", alias="LLM_API_BASE")
    llm_models: str = Field(
        default="grok-4-fast-reasoning,grok-4,grok-3-mini,grok-2-vision-1212",
        alias="LLM_MODELS",
    )
    llm_timeout_seconds: float = Field(default=60.0, alias="LLM_TIMEOUT_SECONDS")

    # Object storage (Supabase Storage REST API)
    storage_url: str = Field(default="", alias="STORAGE_URL")
    storage_service_key: str = Field(default="", alias="STORAGE_SERVICE_KEY")
    storage_outputs_bucket: str = Field(default="outputs", alias="STORAGE_OUTPUTS_BUCKET")
    signed_url_ttl_seconds: int = Field(default=600, alias="SIGNED_URL_TTL_SECONDS")

    # Dispatcher
    dispatch_max_concurrency: int = Field(default=3, alias="DISPATCH_MAX_CONCURRENCY")
    dispatch_batch_size: int = Field(default=10, alias="DISPATCH_BATCH_SIZE")
    dispatch_active_window_seconds: int = Field(
        default=600, alias="DISPATCH_ACTIVE_WINDOW_SECONDS"
    )
    dispatch_save_lease_seconds: int = Field(default=300, alias="DISPATCH_SAVE_LEASE_SECONDS")
    poll_interval_seconds: int = Field(default=2, alias="POLL_INTERVAL_SECONDS")
    dispatch_queue_size: int = Field(default=100, alias="DISPATCH_QUEUE_SIZE")
    dispatch_workers: int = Field(default=2, alias="DISPATCH_WORKERS")

    # Prompt Processor
    prompt_batch_size: int = Field(default=3, alias="PROMPT_BATCH_SIZE")
    prompt_poll_interval_seconds: int = Field(default=5, alias="PROMPT_POLL_INTERVAL_SECONDS")
    prompt_max_retries: int = Field(default=3, alias="PROMPT_MAX_RETRIES")
    prompt_retry_base_delay_seconds: float = Field(
        default=1.0, alias="PROMPT_RETRY_BASE_DELAY_SECONDS"
    )
    prompt_retry_max_delay_seconds: float = Field(
        default=30.0, alias="PROMPT_RETRY_MAX_DELAY_SECONDS"
    )
    prompt_retry_backoff_multiplier: float = Field(
        default=2.0, alias="PROMPT_RETRY_BACKOFF_MULTIPLIER"
    )

    # Reaper
    cleanup_interval_seconds: int = Field(default=60, alias="CLEANUP_INTERVAL_SECONDS")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def llm_models_list(self) -> list[str]:
        """Parse LLM model fallback chain from comma-separated string."""
        return [model.strip() for model in self.llm_models.split(",") if model.strip()]

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.

        Validation is skipped in test/development environments to avoid breaking tests.
        """
        if self.app_env in ("test", "testing", "development"):
            return self

        missing = []

        # REPLICATE_API_TOKEN is required by the dispatcher
        if not self.replicate_api_token:
            missing.append(
                "REPLICATE_API_TOKEN: Get your API token from https://replicate.com/account/api-tokens"
            )

        # LLM_API_KEY is required by the prompt processor
        if not self.llm_api_key:
            missing.append("LLM_API_KEY: API key for the prompt generation model")

        # Storage is required to sign inputs and persist outputs
        if not self.storage_url or not self.storage_service_key:
            missing.append("STORAGE_URL / STORAGE_SERVICE_KEY: Storage project URL and service key")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(_log_level(settings)),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
    else:
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(_log_level(settings)),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )


def _log_level(settings: Settings) -> int:
    """Map LOG_LEVEL name to a stdlib logging level (INFO if unknown)."""
    return getattr(logging, settings.log_level.upper(), logging.INFO)
