"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The
      instance is then passed explicitly to TokenSigner and AuthService; the
      signing secret is never stored in a module-level global.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HS256 signing
       relies on key entropy -- a short key makes offline brute-force of
       captured tokens practical.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random per-process key would silently log every
       user out on restart and break multi-node verification.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessiongate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sessiongate_auth.db'}"


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
    database_url: str = _DEFAULT_DB_URL
    log_level: str = "INFO"
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 3600
    refresh_token_lifetime_months: int = 6
    # Empty issuer/audience means the claim is neither emitted nor validated.
    token_issuer: str = ""
    token_audience: str = ""
    # Clock skew tolerated by strict verification. 0 = expiry is exact.
    token_leeway_seconds: int = 0
    # Slack applied to the advisory access-token expiry check during refresh.
    refresh_expiry_grace_seconds: int = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True

    # ------------------------------------------------------------------
    # Directory service (optional -- empty base URL disables the directory path)
    # ------------------------------------------------------------------

    directory_base_url: str = ""
    directory_api_key: str = ""
    directory_timeout_seconds: int = 10

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
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
    def validate_lifetimes(self) -> "Settings":
        """Reject token lifetimes that would mint already-expired credentials."""
        if self.access_token_expire_seconds <= 0:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be positive.")
        if self.refresh_token_lifetime_months <= 0:
            raise ValueError("REFRESH_TOKEN_LIFETIME_MONTHS must be positive.")
        if self.token_leeway_seconds < 0 or self.refresh_expiry_grace_seconds < 0:
            raise ValueError("Clock tolerances cannot be negative.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    This is the official FastAPI pattern for config (see FastAPI docs /advanced/settings/).

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or build Settings(...) directly
    and pass it to the component under test.
    """
    return Settings()
