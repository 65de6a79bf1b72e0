"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for the security engine happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
or accept a SecurityPolicy instead.

Two layers:
  Settings (pydantic-settings BaseSettings): reads env vars and an optional
      .env file. Field names map to env var names (secret_key -> SECRET_KEY).
      Cached by get_settings() so it is instantiated once per process.

  SecurityPolicy (frozen dataclass): the explicit tuning struct every engine
      component receives at construction. Defaults are the documented values,
      so SecurityPolicy() is usable anywhere. Tests build their own instance
      (e.g. low PBKDF2 iterations, a lockout threshold of 2) instead of
      mutating shared module state.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Token signing,
       refresh-token hashing and secret encryption keys all derive from it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random per-process key would silently
       invalidate every issued token and every encrypted tenant secret.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

import logging
import secrets
from dataclasses import dataclass
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("krm.config")


@dataclass(frozen=True)
class SecurityPolicy:
    """Work factors, lifetimes and thresholds shared by the engine components."""

    # Password hashing (PBKDF2-HMAC-SHA256)
    pbkdf2_iterations: int = 600_000
    # Work factor assumed for two-part "salt:digest" hashes written before the
    # iteration count was recorded in the stored value.
    legacy_pbkdf2_iterations: int = 100_000
    # Ceiling on the work factor read back from a stored hash.
    max_pbkdf2_iterations: int = 10_000_000
    salt_length: int = 16
    hash_length: int = 32
    min_password_length: int = 8
    rehash_on_login: bool = True

    # Tokens
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 60 * 60
    password_reset_ttl_seconds: int = 60 * 60
    token_bytes: int = 32

    # Brute-force guard
    lockout_threshold: int = 5
    lockout_window_seconds: int = 15 * 60
    login_attempt_retention_seconds: int = 24 * 60 * 60

    # Rate limiting
    rate_limit_max_requests: int = 100
    auth_rate_limit_max_requests: int = 10
    rate_limit_window_seconds: int = 60
    rate_limit_retention_seconds: int = 60 * 60
    rate_limit_prune_probability: float = 0.01
    rate_limit_fail_open: bool = True
    # Peers allowed to set X-Forwarded-For. Any other peer is keyed by its
    # socket address.
    trusted_proxies: tuple[str, ...] = ()


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
    database_url: str = "sqlite:///krm_auth.db"

    # ------------------------------------------------------------------
    # Tokens and cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = True
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_days: int = 7
    password_reset_ttl_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Password hashing
    # ------------------------------------------------------------------

    pbkdf2_iterations: int = 600_000
    # Work factor of two-part "salt:digest" hashes. Must stay below
    # pbkdf2_iterations or those hashes are never flagged for rehash.
    legacy_pbkdf2_iterations: int = 100_000

    # ------------------------------------------------------------------
    # Brute-force guard and rate limiting
    # ------------------------------------------------------------------

    lockout_threshold: int = 5
    lockout_window_seconds: int = 15 * 60
    rate_limit_max_requests: int = 100
    auth_rate_limit_max_requests: int = 10
    rate_limit_window_seconds: int = 60
    # Fail-open keeps the service reachable when the rate_limits table is
    # unavailable. Deployments that prefer rejecting traffic set this false.
    rate_limit_fail_open: bool = True
    # JSON list in the environment, e.g. TRUSTED_PROXIES='["10.0.0.1"]'
    trusted_proxies: list[str] = []

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens and encrypted secrets will not survive restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. "
                    "Tokens and encrypted secrets will not persist across restarts."
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
    def validate_work_factors(self) -> "Settings":
        """Reject a PBKDF2 work factor at or below the legacy one."""
        if self.pbkdf2_iterations <= self.legacy_pbkdf2_iterations:
            raise ValueError(
                f"PBKDF2_ITERATIONS ({self.pbkdf2_iterations}) must exceed "
                f"LEGACY_PBKDF2_ITERATIONS ({self.legacy_pbkdf2_iterations})."
            )
        return self

    def security_policy(self) -> SecurityPolicy:
        """Build the SecurityPolicy the engine components are constructed with."""
        return SecurityPolicy(
            pbkdf2_iterations=self.pbkdf2_iterations,
            legacy_pbkdf2_iterations=self.legacy_pbkdf2_iterations,
            access_token_ttl_seconds=self.access_token_ttl_seconds,
            refresh_token_ttl_seconds=self.refresh_token_ttl_days * 24 * 60 * 60,
            password_reset_ttl_seconds=self.password_reset_ttl_seconds,
            lockout_threshold=self.lockout_threshold,
            lockout_window_seconds=self.lockout_window_seconds,
            rate_limit_max_requests=self.rate_limit_max_requests,
            auth_rate_limit_max_requests=self.auth_rate_limit_max_requests,
            rate_limit_window_seconds=self.rate_limit_window_seconds,
            rate_limit_fail_open=self.rate_limit_fail_open,
            trusted_proxies=tuple(self.trusted_proxies),
        )


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
