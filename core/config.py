"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Cosmos happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. redis_url -> REDIS_URL). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      policy: dev mode generates a key with a warning, production mode refuses
      to start without one.

SECRET_KEY policy:
  Shorter than 32 chars is rejected outright; JWT signing relies on key
  entropy. In production mode (DEBUG not set or false) a missing key is a
  hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
moderation/, instance/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("cosmos.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'cosmos.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_expire_seconds: int = 3600
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Cache (Redis). Empty REDIS_URL disables the cache entirely; every
    # cache call then returns its neutral value and the DB is used alone.
    # ------------------------------------------------------------------

    redis_url: str = ""
    redis_socket_timeout: float = 5.0
    cache_prefix: str = "cosmos"
    # 0 = role cache entries never expire (they are busted on refresh)
    role_cache_ttl: int = 0
    # Instance settings: positive entries live settings_cache_ttl seconds (plus
    # up to 30s jitter on writes), negative "__NULL__" entries settings_negative_ttl.
    settings_cache_ttl: int = 300
    settings_negative_ttl: int = 120

    # ------------------------------------------------------------------
    # Role refresh lock
    # ------------------------------------------------------------------

    role_lock_ttl_ms: int = 5000
    role_lock_retry_ms: int = 150
    role_lock_max_wait_ms: int = 3000

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    violation_default_expiry_days: int = 30
    max_invitations_per_user: int = 3
    # Dispute resolution writes the dispute and the violation in one
    # transaction. False reproduces two independent commits.
    atomic_dispute_resolution: bool = True
    # Effective-permission lookup by probing every registered role instead of
    # reading the user's role string. Informational only.
    permission_probing_enabled: bool = False

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    log_level: str = "INFO"
    # Comma-separated logger namespaces switched to DEBUG, e.g.
    # "cosmos.cache,cosmos.roles". "*" enables every cosmos.* logger.
    debug_namespaces: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
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

    def debug_namespace_list(self) -> list[str]:
        return [ns.strip() for ns in self.debug_namespaces.split(",") if ns.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
