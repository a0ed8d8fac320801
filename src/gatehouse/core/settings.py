"""Application settings and configuration.

This module defines all configuration options for the Gatehouse service.
Settings are loaded from environment variables with sensible defaults.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from gatehouse.core.errors import ConfigurationError

_DEFAULT_SECRET_KEY = "change-me-in-production-use-long-random-string"
_DEVELOPMENT_DATABASE_URL = "sqlite:///./gatehouse.db"

Environment = Literal["development", "production"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    Call :meth:`validate_runtime` before serving traffic; it raises
    :class:`ConfigurationError` for unsafe production configurations.
    """

    # Application metadata
    app_name: str = Field(default="Gatehouse", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    environment: Environment = Field(default="production", alias="ENVIRONMENT")

    # Security and authentication
    secret_key: str = Field(default=_DEFAULT_SECRET_KEY, alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    admin_token: str | None = Field(default=None, alias="ADMIN_TOKEN")
    ip_hash_salt: str | None = Field(default=None, alias="IP_HASH_SALT")

    # HTTP
    cors_origins: list[str] = Field(default_factory=list, alias="CORS_ORIGINS")

    # Durable and shared stores
    database_url: str | None = Field(default=None, alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")
    redis_url: str | None = Field(default=None, alias="REDIS_URL")

    # Session quotas
    anonymous_request_limit: int = Field(default=600, alias="ANONYMOUS_REQUEST_LIMIT")
    authenticated_request_limit: int = Field(default=1200, alias="AUTHENTICATED_REQUEST_LIMIT")
    session_window_seconds: int = Field(default=24 * 60 * 60, alias="SESSION_WINDOW_SECONDS")
    quota_window_seconds: int = Field(default=24 * 60 * 60, alias="QUOTA_WINDOW_SECONDS")
    local_cache_ttl_seconds: float = Field(default=30.0, alias="LOCAL_CACHE_TTL_SECONDS")
    fail_open_in_development: bool = Field(default=True, alias="FAIL_OPEN_IN_DEVELOPMENT")

    # Anti-abuse challenge
    anti_abuse_enabled: bool = Field(default=True, alias="ANTI_ABUSE_ENABLED")
    challenge_ttl_seconds: int = Field(default=15 * 60, alias="CHALLENGE_TTL_SECONDS")
    challenge_hard_threshold: int = Field(default=60, alias="CHALLENGE_HARD_THRESHOLD")
    challenge_soft_threshold: int = Field(default=40, alias="CHALLENGE_SOFT_THRESHOLD")
    verification_token_hours: int = Field(default=24, alias="VERIFICATION_TOKEN_HOURS")
    pow_puzzle_count: int = Field(default=3, alias="POW_PUZZLE_COUNT")
    pow_target_bits: int = Field(default=16, alias="POW_TARGET_BITS")
    pow_ttl_seconds: int = Field(default=5 * 60, alias="POW_TTL_SECONDS")

    # Housekeeping
    sweep_interval_seconds: float = Field(default=60.0, alias="SWEEP_INTERVAL_SECONDS")
    sweep_batch_size: int = Field(default=100, alias="SWEEP_BATCH_SIZE")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        populate_by_name=True,
        extra="ignore",
    )

    @property
    def is_development(self) -> bool:
        """Return True when running with the explicit development policy."""
        return self.environment == "development"

    @property
    def fail_open(self) -> bool:
        """Return True if store outages should allow requests instead of denying them."""
        return self.is_development and self.fail_open_in_development

    @property
    def effective_database_url(self) -> str:
        """Return the database URL, falling back to a local file in development.

        Raises:
            ConfigurationError: If no database is configured outside development.
        """
        if self.database_url:
            return self.database_url
        if self.is_development:
            return _DEVELOPMENT_DATABASE_URL
        raise ConfigurationError("DATABASE_URL must be set outside development")

    @property
    def cookie_secure(self) -> bool:
        """Return whether cookies carry the Secure attribute."""
        return not self.is_development

    def validate_runtime(self) -> None:
        """Refuse to serve with an unsafe configuration.

        Raises:
            ConfigurationError: When a production setting is missing or left at its default.
        """
        if self.challenge_soft_threshold >= self.challenge_hard_threshold:
            raise ConfigurationError(
                "CHALLENGE_SOFT_THRESHOLD must be lower than CHALLENGE_HARD_THRESHOLD"
            )
        if self.is_development:
            return

        missing = []
        if not self.database_url:
            missing.append("DATABASE_URL")
        if self.secret_key == _DEFAULT_SECRET_KEY:
            missing.append("SECRET_KEY")
        if not self.ip_hash_salt:
            missing.append("IP_HASH_SALT")
        if missing:
            raise ConfigurationError(
                "Missing production configuration: " + ", ".join(missing)
            )

    def request_limit_for(self, owner_kind: str) -> int:
        """Return the request quota for an owner kind."""
        if owner_kind == "authenticated":
            return self.authenticated_request_limit
        return self.anonymous_request_limit


settings = Settings()
