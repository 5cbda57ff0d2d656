"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates missing signing keys
      with a warning, production mode refuses to start without them.

Security notes:
  [K1] Signing keys shorter than 32 chars are rejected outright. JWT HS256
       signing relies on key entropy -- a short key weakens every token.

  [K2] Access and refresh tokens are signed with different keys. If both were
       the same, a leaked access token could be presented as a refresh token.
       The validator refuses identical keys.

  [K3] In production mode (DEBUG not set or false), a missing key is a hard
       startup failure, so a random key never silently invalidates every
       session on restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'authgate.db'}"


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
    refresh_secret_key: str = ""

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Empty string keeps counters in-process (single instance only).
    redis_url: str = ""
    storage_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # Host headers TrustedHostMiddleware accepts. Env value is a JSON list,
    # e.g. ALLOWED_HOSTS='["auth.example.com"]'.
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 24 * 60 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    reset_token_bcrypt_rounds: int = 10

    # ------------------------------------------------------------------
    # Password reset / verification
    # ------------------------------------------------------------------

    reset_token_expire_seconds: int = 24 * 60 * 60
    verification_token_expire_seconds: int = 24 * 60 * 60
    revoke_sessions_on_password_reset: bool = True
    frontend_url: str = "http://localhost:3000"
    token_purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Lockout and abuse detection
    # ------------------------------------------------------------------

    max_login_attempts: int = 5
    attempt_window_seconds: int = 15 * 60
    lockout_seconds: int = 15 * 60
    ip_block_threshold: int = 10
    ip_block_seconds: int = 60 * 60

    # Suspicious-login heuristics (UTC hours, [start, end))
    business_hours_start: int = 6
    business_hours_end: int = 22
    rapid_login_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # Transport rate limiting (slowapi)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    forgot_password_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing key policy [K1] [K2] [K3].

        Dev mode (DEBUG=true): auto-generate missing keys with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            key is missing.
        """
        for field_name in ("secret_key", "refresh_secret_key"):
            value = getattr(self, field_name)
            if not value:
                if self.debug:
                    setattr(self, field_name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Tokens will not persist across restarts.",
                        field_name.upper(),
                    )
                else:
                    raise ValueError(
                        f"{field_name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, field_name)) < 32:
                raise ValueError(f"{field_name.upper()} must be at least 32 characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ.")
        if not 4 <= self.bcrypt_rounds <= 31 or not 4 <= self.reset_token_bcrypt_rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly, except tests that need a one-off configuration.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
