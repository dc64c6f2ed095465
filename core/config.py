"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for LedgerGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a key with a warning,
      production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing, refresh
  token hashing and OTP hashing all rely on key entropy.

  OTP length, TTL, attempt budget and resend cooldown are enforced here on the
  server. Clients may show a countdown, but the server never trusts client
  timing.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ledgergate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'ledgergate_auth.db'}"


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

    app_name: str = "LedgerGate"
    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost", "testserver"])
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost", "http://localhost:3000"])

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_days: int = 7
    # Lifetime of the pending-login token handed out while a 2FA code is
    # outstanding. Must outlive several resends.
    two_factor_token_expire_seconds: int = 10 * 60

    # ------------------------------------------------------------------
    # Wallet challenge-response
    # ------------------------------------------------------------------

    wallet_challenge_ttl_seconds: int = 5 * 60
    wallet_message_domain: str = "ledgergate.local"

    # ------------------------------------------------------------------
    # Two-factor (OTP over messaging channel)
    # ------------------------------------------------------------------

    otp_length: int = Field(default=6, ge=4, le=10)
    otp_ttl_seconds: int = 120
    otp_max_attempts: int = Field(default=5, ge=1)
    otp_resend_cooldown_seconds: int = 30
    otp_delivery_timeout_seconds: float = 10.0
    otp_channel: str = "whatsapp"

    # WhatsApp Cloud API. Empty access token means "log instead of send".
    whatsapp_api_url: str = "https://graph.facebook.com/v19.0"
    whatsapp_phone_number_id: str = ""
    whatsapp_access_token: str = ""

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    password_reset_ttl_seconds: int = 60 * 60
    # Resend transactional email API. Empty API key means "keep in the outbox".
    email_api_url: str = "https://api.resend.com/emails"
    email_api_key: str = ""
    email_from_address: str = "LedgerGate <noreply@ledgergate.local>"
    # Link embedded in reset emails, e.g. https://app.example.com/reset-password
    password_reset_url: str = ""

    # ------------------------------------------------------------------
    # Rate limiting (limits-library rate strings, fixed window)
    # ------------------------------------------------------------------

    rate_limit_storage_uri: str = "memory://"
    default_rate_limit: str = "60/minute"
    login_rate_limit: str = "5/minute"
    wallet_challenge_rate_limit: str = "10/minute"
    wallet_login_rate_limit: str = "5/minute"
    wallet_register_rate_limit: str = "3/hour"
    credential_register_rate_limit: str = "3/hour"
    two_factor_verify_rate_limit: str = "5/minute"
    two_factor_resend_rate_limit: str = "3/minute"
    two_factor_setup_rate_limit: str = "5/minute"
    token_refresh_rate_limit: str = "30/minute"
    logout_rate_limit: str = "60/minute"
    account_rate_limit: str = "60/minute"
    password_change_rate_limit: str = "5/minute"
    password_forgot_rate_limit: str = "3/hour"
    password_reset_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    def route_limits(self) -> dict[str, str]:
        """Return the route-id -> rate string table consumed by RateLimiter."""
        return {
            "login/credential": self.login_rate_limit,
            "login/wallet/challenge": self.wallet_challenge_rate_limit,
            "login/wallet/verify": self.wallet_login_rate_limit,
            "register/wallet": self.wallet_register_rate_limit,
            "register/credential": self.credential_register_rate_limit,
            "twofactor/verify": self.two_factor_verify_rate_limit,
            "twofactor/resend": self.two_factor_resend_rate_limit,
            "twofactor/setup": self.two_factor_setup_rate_limit,
            "twofactor/enable": self.two_factor_setup_rate_limit,
            "twofactor/disable": self.two_factor_setup_rate_limit,
            "token/refresh": self.token_refresh_rate_limit,
            "logout": self.logout_rate_limit,
            "me": self.account_rate_limit,
            "password/change": self.password_change_rate_limit,
            "password/forgot": self.password_forgot_rate_limit,
            "password/reset": self.password_reset_rate_limit,
        }


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
