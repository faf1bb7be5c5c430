"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, frontend_url -> FRONTEND_URL).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates a SECRET_KEY with a warning, production
      mode refuses to start without one.

Nothing outside the application factory reads the settings object directly.
The signing secret, token lifetimes, and password policy are handed to the
components that need them when the AuthService graph is built (api/main.py).

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or notify/.
"""

import logging
import secrets
from datetime import timedelta
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")


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
    database_url: str = "sqlite:///authgate.db"
    bind_addr: str = "127.0.0.1:3000"

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 3600
    refresh_token_ttl_hours: int = 30 * 24
    verification_token_ttl_hours: int = 24
    reset_token_ttl_hours: int = 1
    token_purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Password policy and hashing cost
    # ------------------------------------------------------------------

    password_min_length: int = 8
    password_max_length: int = 255
    password_require_letter: bool = True
    password_require_digit: bool = True
    password_require_uppercase: bool = False
    password_require_symbol: bool = False

    # argon2-cffi defaults (RFC 9106 low-memory profile)
    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536
    argon2_parallelism: int = 4

    # ------------------------------------------------------------------
    # Email delivery
    # ------------------------------------------------------------------

    # Public base URL of the frontend; verification and reset links point here.
    frontend_url: str = "http://localhost:5173"
    # Empty string means "no provider" -- links are logged instead of mailed.
    sendgrid_api_key: str = ""
    email_from_address: str = "auth@example.com"
    email_from_name: str = "AuthGate"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing. Both the JWT signature and the stored
            refresh/ephemeral token hashes depend on it.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.password_min_length < 1 or self.password_max_length < self.password_min_length:
            raise ValueError("PASSWORD_MAX_LENGTH must be >= PASSWORD_MIN_LENGTH >= 1.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def access_token_lifetime(self) -> timedelta:
        return timedelta(seconds=self.access_token_expire_seconds)

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return timedelta(hours=self.refresh_token_ttl_hours)

    @property
    def verification_token_lifetime(self) -> timedelta:
        return timedelta(hours=self.verification_token_ttl_hours)

    @property
    def reset_token_lifetime(self) -> timedelta:
        return timedelta(hours=self.reset_token_ttl_hours)

    def bind_host_port(self) -> tuple[str, int]:
        """Split BIND_ADDR ("host:port") into its parts.

        rpartition keeps bracketed IPv6 hosts like "[::1]:3000" intact.
        """
        host, _, port = self.bind_addr.rpartition(":")
        if not host or not port.isdigit():
            raise ValueError(f"BIND_ADDR must look like host:port, got {self.bind_addr!r}")
        return host.strip("[]"), int(port)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
