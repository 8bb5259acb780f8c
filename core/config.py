"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for RetailMaster auth happen here. No module
should call os.getenv() or os.environ.get() directly. The API lifespan calls
get_settings() once and passes the values it needs into the auth components'
constructors; nothing in auth/ reads Settings mid-request.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, refresh_secret_key -> REFRESH_SECRET_KEY).

  @model_validator(mode="after"): cross-field validation once all fields are
      resolved -- signing-key policy and TTL ordering.

Security notes:
  Access and refresh tokens are signed with distinct keys. A leaked access
  key must not let an attacker mint refresh tokens, so identical keys are
  rejected at startup.

  Keys shorter than 32 chars are rejected outright. In production mode
  (DEBUG not set or false) a missing key is a hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("retailmaster.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'retailmaster_auth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true the signing keys
    are generated). The model_validator enforces production-safety rules.
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
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The validator below
    # either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    refresh_secret_key: str = ""
    jwt_algorithm: str = "HS256"
    access_token_ttl_seconds: int = Field(default=15 * 60, gt=0)
    refresh_token_ttl_seconds: int = Field(default=7 * 24 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    max_login_attempts: int = Field(default=5, ge=1)
    lock_duration_seconds: int = Field(default=5 * 60, gt=0)
    # Upper bound on the stored attempts counter. Concurrent failures keep
    # counting past the threshold until the lock lands; the ceiling stops an
    # attacker from growing the column without bound.
    login_attempts_ceiling: int = Field(default=1000, ge=1)

    # ------------------------------------------------------------------
    # Token transport
    # ------------------------------------------------------------------

    auth_header_name: str = "Authorization"
    access_cookie_name: str = "access_token"
    refresh_cookie_name: str = "refresh_token"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Rate limiting / registration / housekeeping
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    self_registration_enabled: bool = True
    refresh_token_purge_interval_seconds: int = Field(default=6 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing-key policy for both token kinds.

        Dev mode (DEBUG=true): auto-generate missing keys with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if either key is missing.

        Both modes: reject keys shorter than 32 characters and reject a
            refresh key equal to the access key.
        """
        for field in ("secret_key", "refresh_secret_key"):
            if getattr(self, field):
                continue
            if not self.debug:
                raise ValueError(
                    f"{field.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, field, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", field.upper())
        if len(self.secret_key) < 32 or len(self.refresh_secret_key) < 32:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("REFRESH_SECRET_KEY must differ from SECRET_KEY.")
        return self

    @model_validator(mode="after")
    def validate_token_lifetimes(self) -> "Settings":
        if self.refresh_token_ttl_seconds <= self.access_token_ttl_seconds:
            raise ValueError("REFRESH_TOKEN_TTL_SECONDS must be greater than ACCESS_TOKEN_TTL_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
