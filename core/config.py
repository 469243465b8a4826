"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthVault happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. encryption_key -> ENCRYPTION_KEY).

  @model_validator(mode="after"): Applies the secret policy once every field
      is resolved. Dev mode generates missing secrets with a warning,
      production mode refuses to start without them.

Security notes:
  Four secrets are consumed: SECRET_KEY (session middleware signing),
  ENCRYPTION_KEY (AES-256-GCM for profile PII and TOTP secrets),
  JWT_ACCESS_SECRET and JWT_REFRESH_SECRET (HS256, one per token kind).

  Secrets shorter than 32 characters are accepted with a warning. The crypto
  layer fits every key to exactly 32 bytes (core.crypto.fit_key), so a short
  key never produces undefined behavior, only reduced entropy.

  JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ. Sharing one key would
  let a leaked access-token key mint refresh tokens.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authvault.config")

_SECRET_FIELDS = ("secret_key", "encryption_key", "jwt_access_secret", "jwt_refresh_secret")
_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in tests
    without a real .env file. The model_validator enforces the secret policy.
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
    log_level: str = "INFO"
    database_url: str = "sqlite:///authvault.db"

    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    encryption_key: str = ""

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_issuer: str = "authvault-backend"
    jwt_audience: str = "authvault-frontend"
    access_token_ttl_minutes: int = 15
    refresh_token_ttl_days: int = 7
    session_ttl_days: int = 7

    # ------------------------------------------------------------------
    # Credentials policy
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    max_failed_login_attempts: int = 5
    two_factor_issuer: str = "AuthVault"
    backup_code_count: int = 10
    api_key_limit: int = 10

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""
    kakao_client_id: str = ""
    kakao_client_secret: str = ""
    # Browser landing page for the OAuth callback redirect; tokens ride in the URL fragment.
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    register_rate_limit: str = "5/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret policy.

        Dev mode (DEBUG=true): auto-generate each missing secret with a
            warning. Encrypted PII and sessions will not survive a restart.

        Production mode: refuse to start if any secret is missing.

        Both modes: warn on secrets shorter than 32 characters and refuse
            identical access and refresh signing secrets.
        """
        for field in _SECRET_FIELDS:
            value = getattr(self, field)
            env_name = field.upper()
            if not value:
                if self.debug:
                    setattr(self, field, secrets.token_hex(32))
                    logger.warning("Using auto-generated %s. Data protected by it will not survive a restart.", env_name)
                    continue
                raise ValueError(
                    f"{env_name} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            if len(value) < _MIN_SECRET_LENGTH:
                logger.warning("%s is shorter than %d characters and will be padded.", env_name, _MIN_SECRET_LENGTH)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must be different.")
        if self.max_failed_login_attempts < 1:
            raise ValueError("MAX_FAILED_LOGIN_ATTEMPTS must be at least 1.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
