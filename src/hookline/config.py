"""Configuration management for Hookline."""

import logging
import secrets
import warnings
from typing import Any, Literal

from pydantic import Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings

from hookline.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _generate_dev_secret_key() -> str:
    return secrets.token_hex(32)


class Settings(BaseSettings):
    """Delivery, retry, storage and API settings.

    Every field reads from a ``HOOKLINE_``-prefixed environment variable or
    from ``.env``, e.g. ``HOOKLINE_MAX_ATTEMPTS=5``. Production
    (``HOOKLINE_ENV=production``) turns auth on, insists on an explicit
    ``HOOKLINE_AUTH_SECRET_KEY`` and refuses plain-http loopback endpoints.
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./hookline.db",
        description="SQLAlchemy async database URL",
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements (debugging only)",
    )

    # Delivery
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Timeout for a single outbound delivery request",
    )
    max_concurrent_deliveries: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Maximum in-process concurrent outbound requests",
    )
    response_snippet_chars: int = Field(
        default=1000,
        ge=0,
        le=65536,
        description="Characters of the response body kept on each attempt",
    )
    allow_insecure_localhost: bool = Field(
        default=False,
        description="Accept http:// endpoint URLs for loopback hosts (local development)",
    )

    # Retries
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Delivery attempts per (endpoint, event) pair, including the first",
    )
    retry_base_delay_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Delay before the second attempt (doubles for each further attempt)",
    )
    retry_max_delay_seconds: float = Field(
        default=900.0,
        ge=0,
        description="Upper bound on the delay between attempts",
    )
    retry_jitter_ratio: float = Field(
        default=0.2,
        ge=0.0,
        lt=1.0,
        description="Relative random jitter applied to each retry delay",
    )
    failure_threshold: int = Field(
        default=10,
        ge=1,
        description="Consecutive exhausted events after which an endpoint is disabled",
    )

    # Sweeper
    sweep_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Seconds between retry sweeps in the worker loop",
    )
    sweep_batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum due tasks considered per sweep",
    )
    stale_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="In-flight tasks older than this multiple of the HTTP timeout are reclaimed",
    )
    embedded_sweeper: bool = Field(
        default=False,
        description="Run the retry sweeper inside the API process",
    )

    # Maintenance
    delivery_retention_days: int = Field(
        default=30,
        ge=1,
        description="Delivery attempts older than this are removed by cleanup",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # Authentication
    auth_enabled: bool | None = Field(
        default=None,
        description="Require Bearer tokens (unset: on in production only)",
    )
    auth_secret_key: str | None = Field(
        default=None,
        description="HMAC key for merchant tokens; mandatory in production",
    )

    # Filled in by the security validator when no key is configured outside production
    _dev_secret: str | None = None

    # CORS
    cors_enabled: bool = True
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])
    cors_allow_methods: list[str] = Field(
        default_factory=lambda: ["GET", "POST", "PATCH", "DELETE", "OPTIONS"]
    )
    cors_allow_headers: list[str] = Field(default_factory=lambda: ["*"])
    cors_allow_credentials: bool = False
    cors_max_age: int = Field(default=600, ge=0, le=86400)

    @model_validator(mode="after")
    def validate_retry_delays(self) -> "Settings":
        """The retry cap must not be below the base delay."""
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError(
                f"retry_max_delay_seconds ({self.retry_max_delay_seconds}) must be >= "
                f"retry_base_delay_seconds ({self.retry_base_delay_seconds})"
            )
        return self

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Resolve auth defaults and refuse unsafe production setups."""
        production = self.env == "production"
        if self.auth_enabled is None:
            object.__setattr__(self, "auth_enabled", production)

        if not production:
            if self.auth_secret_key is None:
                object.__setattr__(self, "_dev_secret", _generate_dev_secret_key())
                logger.debug("Using a per-process auth secret; issued tokens die with the process")
            return self

        if self.auth_secret_key is None:
            raise ValueError(
                "HOOKLINE_AUTH_SECRET_KEY is required when HOOKLINE_ENV=production "
                "(any 32+ byte random hex string)"
            )
        if self.allow_insecure_localhost:
            raise ValueError("HOOKLINE_ALLOW_INSECURE_LOCALHOST is for local development only")
        if not self.auth_enabled:
            warnings.warn(
                "Authentication is disabled while HOOKLINE_ENV=production",
                UserWarning,
                stacklevel=2,
            )
            logger.warning("Production API running without authentication")
        return self

    @property
    def is_auth_enabled(self) -> bool:
        if self.auth_enabled is None:
            return self.env == "production"
        return self.auth_enabled

    @property
    def effective_auth_secret_key(self) -> str:
        """Configured secret, else the generated development secret.

        Raises:
            ValueError: If neither is available.
        """
        key = self.auth_secret_key or self._dev_secret
        if key is None:
            raise ValueError("No auth secret key available")
        return key

    @property
    def stale_after_seconds(self) -> float:
        """Age after which an in-flight task is considered abandoned."""
        return self.http_timeout_seconds * self.stale_multiplier

    model_config = {
        "env_prefix": "HOOKLINE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


def load_settings(**overrides: Any) -> Settings:
    """Read settings from the environment for a process entry point.

    Raises:
        ConfigurationError: A value is missing or invalid. The message lists
            every offending setting.
    """
    try:
        return Settings(**overrides)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'settings'}: {error['msg']}"
            for error in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {problems}") from e
