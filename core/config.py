"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthKeep happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.
Services never call get_settings() themselves either: api/main.py and main.py
read the settings once and pass the values into constructors, so the signing
secret and TTLs are fixed for the process lifetime.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning; production mode
      refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC digest of action tokens both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authkeep.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    secret_key: str = ""
    database_url: str = "sqlite:///authkeep.db"
    # Seconds a single store call may wait on a lock before StoreUnavailable.
    store_timeout_seconds: int = 5

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Short by default: access tokens are stateless and cannot be revoked
    # before they expire.
    access_token_expire_seconds: int = 900
    # Lifetime of a login session's refresh token; every refresh restarts it.
    refresh_token_expire_seconds: int = 14 * 24 * 3600
    verification_token_ttl_seconds: int = 24 * 3600
    reset_token_ttl_seconds: int = 3600
    # 0 disables the background sweep of expired action tokens and sessions.
    token_sweep_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_min_length: int = 8
    password_max_length: int = 128
    password_require_letter: bool = True
    password_require_digit: bool = True
    password_require_symbol: bool = False

    # ------------------------------------------------------------------
    # Mail
    # ------------------------------------------------------------------

    # "log" (dev), "smtp", or "http"
    mail_backend: str = "log"
    mail_from: str = "no-reply@localhost"
    mail_timeout_seconds: int = 10
    frontend_base_url: str = "http://localhost:3000"

    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True

    mail_api_url: str = ""
    mail_api_key: str = ""

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Access tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Access tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_token_lifetimes(self) -> "Settings":
        """Reject non-positive TTLs; a zero TTL would issue tokens that are already expired."""
        for name in (
            "access_token_expire_seconds",
            "refresh_token_expire_seconds",
            "verification_token_ttl_seconds",
            "reset_token_ttl_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive number of seconds.")
        if self.mail_backend not in ("log", "smtp", "http"):
            raise ValueError("MAIL_BACKEND must be one of: log, smtp, http.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
