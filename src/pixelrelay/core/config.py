"""Application configuration using Pydantic BaseSettings."""

import ipaddress
import logging
from urllib.parse import urlparse

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Externally reachable base URL for provider webhooks and queue callbacks
    public_base_url: str = Field(default="", alias="PUBLIC_BASE_URL")

    # Coordination (distributed locks, markers, progress hints)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Freepik (upscale, background removal, flux-dev)
    freepik_api_base: str = Field(default="https://api.freepik.com", alias="FREEPIK_API_BASE")
    freepik_webhook_secret: str = Field(default="", alias="FREEPIK_WEBHOOK_SECRET")

    # fal.ai (image edit)
    fal_api_key: str = Field(default="", alias="FAL_API_KEY")
    fal_queue_base: str = Field(default="https://queue.fal.run", alias="FAL_QUEUE_BASE")
    fal_image_edit_model: str = Field(default="fal-ai/qwen-image-edit", alias="FAL_IMAGE_EDIT_MODEL")

    # Replicate (flux-schnell text-to-image)
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_model_version: str = Field(
        default="black-forest-labs/flux-schnell", alias="REPLICATE_MODEL_VERSION"
    )

    # Delay queue (QStash)
    qstash_url: str = Field(default="https://qstash.upstash.io", alias="QSTASH_URL")
    qstash_token: str = Field(default="", alias="QSTASH_TOKEN")
    qstash_current_signing_key: str = Field(default="", alias="QSTASH_CURRENT_SIGNING_KEY")
    qstash_next_signing_key: str = Field(default="", alias="QSTASH_NEXT_SIGNING_KEY")

    # Object store (S3-compatible, e.g. Cloudflare R2)
    object_store_bucket: str = Field(default="", alias="OBJECT_STORE_BUCKET")
    object_store_endpoint_url: str = Field(default="", alias="OBJECT_STORE_ENDPOINT_URL")
    object_store_region: str = Field(default="auto", alias="OBJECT_STORE_REGION")
    object_store_access_key_id: str = Field(default="", alias="OBJECT_STORE_ACCESS_KEY_ID")
    object_store_secret_access_key: str = Field(default="", alias="OBJECT_STORE_SECRET_ACCESS_KEY")
    object_store_public_url: str = Field(default="", alias="OBJECT_STORE_PUBLIC_URL")

    # Timeouts
    provider_timeout_seconds: float = Field(default=120.0, alias="PROVIDER_TIMEOUT_SECONDS")
    provider_query_timeout_seconds: float = Field(
        default=30.0, alias="PROVIDER_QUERY_TIMEOUT_SECONDS"
    )
    relay_timeout_seconds: float = Field(default=60.0, alias="RELAY_TIMEOUT_SECONDS")

    # Completion handler and scheduled polls
    completion_lock_ttl_seconds: int = Field(default=300, alias="COMPLETION_LOCK_TTL_SECONDS")
    poll_base_delay_seconds: int = Field(default=30, alias="POLL_BASE_DELAY_SECONDS")
    poll_max_delay_seconds: int = Field(default=300, alias="POLL_MAX_DELAY_SECONDS")
    poll_max_attempts: int = Field(default=5, alias="POLL_MAX_ATTEMPTS")
    progress_hint_ttl_seconds: int = Field(default=3600, alias="PROGRESS_HINT_TTL_SECONDS")

    # Timeout sweeper
    sweep_interval_seconds: int = Field(default=60, alias="SWEEP_INTERVAL_SECONDS")
    sweep_batch_size: int = Field(default=50, alias="SWEEP_BATCH_SIZE")

    # Anonymous trial and admin surface
    trial_enabled: bool = Field(default=True, alias="TRIAL_ENABLED")
    admin_token: str = Field(default="", alias="ADMIN_TOKEN")

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def queue_signing_keys(self) -> list[str]:
        """Configured QStash signing keys (current first, then next)."""
        return [
            key for key in (self.qstash_current_signing_key, self.qstash_next_signing_key) if key
        ]

    def callback_url(self, path: str) -> str:
        """Build an absolute callback URL under PUBLIC_BASE_URL."""
        return f"{self.public_base_url.rstrip('/')}/{path.lstrip('/')}"

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Ensures the variables every orchestration path depends on are set.
        Fails fast with clear error messages if configuration is incomplete.

        Validation is skipped in test environments to avoid breaking tests.
        """
        # Skip validation in test environments
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.public_base_url:
            missing.append(
                "PUBLIC_BASE_URL: Public HTTPS origin that providers and the queue can reach"
            )

        if not self.object_store_bucket:
            missing.append("OBJECT_STORE_BUCKET: Bucket that receives relayed results")

        if not self.object_store_public_url:
            missing.append("OBJECT_STORE_PUBLIC_URL: Public base URL serving the bucket")

        if not self.qstash_token:
            missing.append("QSTASH_TOKEN: Get your token from https://console.upstash.com/qstash")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def is_local_url(url: str) -> bool:
    """Return True when the URL cannot be reached by an external provider.

    Empty URLs, localhost names, loopback/unspecified/link-local addresses and
    `.local` mDNS names are all considered local.
    """
    if not url:
        return True

    host = (urlparse(url).hostname or "").lower()
    if not host or host == "localhost" or host.endswith(".localhost") or host.endswith(".local"):
        return True

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False

    return address.is_loopback or address.is_unspecified or address.is_link_local


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    if settings.app_env == "production":
        # JSON output for production (log aggregation)
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
    else:
        # Console output for development (human-readable)
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
