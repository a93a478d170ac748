"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authcore happen here. No module should
call os.getenv() or os.environ.get() directly.

Design patterns used:
  Explicit injection: components (TokenCodec, SessionManager, the stores and
      the revocation cache) receive a Settings instance through their
      constructor. Nothing reads configuration through a module-level global.

  Entry-point singleton via lru_cache: get_settings() is only called by
      process entry points (main.py, the FastAPI app factory of the trusting
      service) to build the Settings object once and hand it down.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

Security notes:
  JWT_SECRET shorter than 32 chars is rejected outright. HS256 signing relies
  on key entropy -- a short key makes offline brute-force of captured tokens
  practical.

  In production mode (DEBUG not set or false), a missing JWT_SECRET is a
  hard startup failure. Dev mode generates a throwaway key with a warning.

Layer rule: core/ is the kernel. This module may not import from auth/ or cache/.
"""

import logging
import secrets
from datetime import timedelta
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields except jwt_secret have defaults so Settings(jwt_secret=...) can
    be instantiated in tests without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    jwt_secret: str = ""
    jwt_issuer: str = "authcore"

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    # Off by default: refresh_access_token() never rotates. When enabled,
    # rotate_refresh_token() becomes available to callers.
    rotate_refresh_tokens: bool = False

    # ------------------------------------------------------------------
    # Login rate limiting
    # ------------------------------------------------------------------

    login_max_attempts: int = 5
    login_window_seconds: int = 15 * 60

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    # 12 rounds is ~250ms on commodity hardware. Tests drop this to 4.
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///./authcore.db"
    # Empty string selects the in-process memory cache (single process only).
    redis_url: str = ""
    redis_socket_timeout: float = 5.0
    revoked_token_retention_days: int = 30

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(seconds=self.access_token_ttl_seconds)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(seconds=self.refresh_token_ttl_seconds)

    @property
    def login_window(self) -> timedelta:
        return timedelta(seconds=self.login_window_seconds)

    @property
    def revoked_token_retention(self) -> timedelta:
        return timedelta(days=self.revoked_token_retention_days)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "login_max_attempts",
        "login_window_seconds",
        "revoked_token_retention_days",
    )
    @classmethod
    def must_be_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("bcrypt_rounds")
    @classmethod
    def bcrypt_rounds_in_range(cls, value: int) -> int:
        # bcrypt.gensalt() only accepts log rounds in 4..31.
        if not 4 <= value <= 31:
            raise ValueError("bcrypt_rounds must be between 4 and 31")
        return value

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Enforce the JWT_SECRET policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Every token becomes invalid on restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            JWT_SECRET is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.jwt_secret:
            if self.debug:
                self.jwt_secret = secrets.token_hex(32)
                logger.warning("Using auto-generated JWT_SECRET. Issued tokens will not survive a restart.")
            else:
                raise ValueError(
                    "JWT_SECRET is required in production mode. "
                    "Set JWT_SECRET in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters.")
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must be longer than ACCESS_TOKEN_TTL_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings instance.

    Only entry points call this; everything below them receives the instance
    through a constructor argument.

    In tests: construct Settings(...) directly, or call get_settings.cache_clear()
    between cases that need different environment variables.
    """
    return Settings()
