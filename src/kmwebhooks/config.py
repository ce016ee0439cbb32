"""Configuration management for kmwebhooks."""

import logging
from typing import Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """kmwebhooks configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the KM_ prefix. For example:
        KM_WEBHOOK_SIGNING_KEY=<64 hex chars>
        KM_WEBHOOK_MAX_ATTEMPTS=5

    Security Notes:
        - The signing key is only validated when a secret operation runs,
          so a missing key fails closed at dispatch time
        - In production (KM_ENV=production), a missing key is a startup error
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Secrets
    webhook_signing_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("KM_WEBHOOK_SIGNING_KEY", "WEBHOOK_SIGNING_KEY"),
        description=(
            "64-character hex key (32 bytes) for AES-256-GCM encryption of "
            "subscription signing secrets. Generate with: openssl rand -hex 32"
        ),
    )

    # Delivery
    webhook_timeout_seconds: float = Field(
        default=10.0,
        gt=0.0,
        le=60.0,
        description="Per-attempt delivery timeout",
    )
    webhook_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum delivery attempts per subscription and event",
    )
    webhook_max_concurrent: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum subscriptions dispatched concurrently per event",
    )
    webhook_retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Initial retry delay (doubles each attempt)",
    )
    webhook_retry_jitter: float = Field(
        default=0.1,
        ge=0.0,
        le=0.5,
        description="Uniform jitter applied to retry delays (0.1 = +/-10%)",
    )
    webhook_user_agent: str = Field(
        default="KnowledgeMarket-Webhook/1.0",
        description="User-Agent header sent with every delivery",
    )

    # Storage
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant connection URL",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (for cloud)",
    )
    collection_prefix: str = Field(
        default="km",
        description="Prefix for Qdrant collection names",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    model_config = {
        "env_prefix": "KM_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "populate_by_name": True,
    }

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Fail fast in production when no signing key is configured.

        In dev/test a missing key is allowed at load time; every secret
        operation still refuses to run without it.
        """
        if self.env == "production" and not self.webhook_signing_key:
            raise ValueError(
                "KM_WEBHOOK_SIGNING_KEY must be set in production. "
                "Generate one with: openssl rand -hex 32"
            )
        if not self.webhook_signing_key:
            logger.debug("No webhook signing key configured; deliveries will fail closed")
        return self


# Global settings instance
settings = Settings()
