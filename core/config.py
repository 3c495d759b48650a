"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionWarden happen here. No module should
call os.getenv() or os.environ.get() directly. The process builds one Settings
instance at startup (get_settings()) and hands it to the TokenCodec, the
session store factory, and the SessionManager constructors.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Implements the signing key policy and the TTL ordering rule.

Security notes:
  [K1] A missing SECRET_KEY outside DEBUG mode is a hard startup failure. There
       is no hardcoded fallback key.

  [K2] Known placeholder values ("changeme", "undefined", ...) are rejected in
       every mode, including DEBUG.

  [K3] SECRET_KEY shorter than 32 chars is rejected. HS256 signing and the
       HMAC fingerprints kept in the session store both rely on key entropy.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigurationError

logger = logging.getLogger("sessionwarden.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'sessionwarden_users.db'}"

# Values that show up in sample .env files and debugging fallbacks. Compared
# case-insensitively after stripping whitespace.
PLACEHOLDER_KEYS: frozenset[str] = frozenset(
    {
        "undefined",
        "null",
        "none",
        "changeme",
        "change-me",
        "change_me",
        "secret",
        "your-secret-key",
        "your_secret_key",
        "jwt_secret",
        "temporary-fallback-for-debugging",
    }
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings(debug=True) can be instantiated in
    test environments without a real .env file. The model_validator enforces
    the production-safety rules at startup.
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

    # ------------------------------------------------------------------
    # Token lifetimes
    # ------------------------------------------------------------------

    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # Backing stores
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    # Empty = no session cache configured. "memory://" = in-process TTL map.
    # Anything else is handed to redis.Redis.from_url().
    redis_url: str = ""
    redis_socket_timeout: float = 2.0
    store_retry_seconds: float = 30.0
    refresh_lookup: Literal["index", "scan"] = "index"
    allow_degraded_login: bool = True

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    refresh_cookie_name: str = "refresh_token"
    refresh_cookie_path: str = "/api/v1/auth"
    login_rate_limit: str = "10/minute"
    cors_origins: list[str] = ["http://localhost:5173"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [K1] [K2] [K3].

        Dev mode (DEBUG=true): a missing key is replaced by a random 256-bit
            key with a warning. Sessions will not survive restart.

        Production mode: refuse to start if SECRET_KEY is missing.
        """
        key = self.secret_key.strip()
        if key.lower() in PLACEHOLDER_KEYS:
            raise ValueError("SECRET_KEY is set to a known placeholder value. Generate a real key.")
        if not key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
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
    def validate_ttls(self) -> "Settings":
        if self.access_token_ttl_seconds <= 0 or self.refresh_token_ttl_seconds <= 0:
            raise ValueError("Token TTLs must be positive.")
        if self.access_token_ttl_seconds >= self.refresh_token_ttl_seconds:
            raise ValueError("ACCESS_TOKEN_TTL_SECONDS must be shorter than REFRESH_TOKEN_TTL_SECONDS.")
        return self


def load_settings(**overrides) -> Settings:
    """Build a Settings instance, converting validation failures to ConfigurationError.

    Keyword overrides take precedence over the environment. Tests use this to
    build isolated settings without touching os.environ.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        messages = "; ".join(err["msg"] for err in exc.errors())
        raise ConfigurationError(messages) from exc


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Called once by the application entry points (api/main.py lifespan and the
    CLI). Business logic receives the instance through constructors instead.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return load_settings()
