"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the E-QMS API happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Only the
      process entry point (asgi.py / create_app) calls it; everything below
      the app factory receives the Settings object or the values derived from
      it by injection, so tests can build an app with substituted secrets/TTLs.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  JWT_SECRET shorter than 32 chars is rejected outright. HS256 signing and the
  auditor token HMAC both rely on key entropy.

  AUDITOR_TOKEN_SECRET is optional. When empty it is derived from JWT_SECRET
  with HMAC-SHA256 under a fixed label, so the two schemes never share a key
  even when only one secret is configured.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, audit/, or equipment/.
"""

import hashlib
import hmac
import logging
import re
import secrets
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("eqms.config")

_DURATION_RE = re.compile(r"^\s*(-?\d+)\s*([smhd]?)\s*$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str | int) -> int:
    """Convert a duration like "24h", "15m", "30s", "7d" or "3600" to seconds.

    Negative values are accepted ("-1s") so tests can mint already-expired
    tokens. Raises ValueError for anything else.
    """
    if isinstance(value, int):
        return value
    match = _DURATION_RE.match(value)
    if match is None:
        raise ValueError(f"Invalid duration: {value!r}. Use forms like '24h', '15m', '30s', '7d'.")
    amount, unit = match.groups()
    return int(amount) * _DURATION_UNITS[unit]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (given DEBUG=true). The
    model_validator enforces production-safety rules at startup.
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
    app_name: str = "E-QMS API"
    database_url: str = "sqlite:///eqms.db"

    # ------------------------------------------------------------------
    # Session tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    jwt_secret: str = ""
    jwt_expires_in: str = "24h"

    # ------------------------------------------------------------------
    # Auditor access tokens
    # ------------------------------------------------------------------

    auditor_token_secret: str = ""
    auditor_token_max_days: int = 90

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("jwt_expires_in")
    @classmethod
    def validate_expires_in(cls, value: str) -> str:
        parse_duration(value)
        return value

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the JWT_SECRET policy and resolve the auditor token key.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            JWT_SECRET is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.jwt_secret:
            if self.debug:
                self.jwt_secret = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated JWT_SECRET. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "JWT_SECRET is required in production mode. "
                    "Set JWT_SECRET in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters.")
        if not self.auditor_token_secret:
            self.auditor_token_secret = hmac.new(
                self.jwt_secret.encode(),
                b"eqms-auditor-token",
                hashlib.sha256,
            ).hexdigest()
        return self

    @property
    def token_ttl_seconds(self) -> int:
        return parse_duration(self.jwt_expires_in)


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings instance.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.

    In tests: prefer building a Settings(...) directly and passing it to
    create_app(); call get_settings.cache_clear() only if a test must
    exercise environment loading itself.
    """
    return Settings()
