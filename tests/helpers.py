"""
tests/helpers.py -- Plain helpers shared by the test modules and conftest.py.

Kept out of conftest.py so test modules can import them directly.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

from eth_account import Account as EthAccount
from eth_account.messages import encode_defunct

from auth.store import create_store_engine
from core.config import Settings

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
PASSWORD = "correct horse battery"
PHONE = "+15551234567"

# Rate limits high enough that functional tests never trip them. Tests that
# exercise limiting build their own RateLimiter.
_RELAXED_LIMITS = {
    field: "1000/minute"
    for field in (
        "login_rate_limit",
        "wallet_challenge_rate_limit",
        "wallet_login_rate_limit",
        "wallet_register_rate_limit",
        "credential_register_rate_limit",
        "two_factor_verify_rate_limit",
        "two_factor_resend_rate_limit",
        "two_factor_setup_rate_limit",
        "token_refresh_rate_limit",
        "logout_rate_limit",
        "account_rate_limit",
        "password_change_rate_limit",
        "password_forgot_rate_limit",
        "password_reset_rate_limit",
    )
}


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_engine(prefix: str = "auth"):
    """Create an isolated named shared-memory SQLite engine with every auth table."""
    return create_store_engine(f"sqlite:///file:test_{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def make_settings(**overrides) -> Settings:
    values = {"debug": True, "secret_key": TEST_SECRET, **_RELAXED_LIMITS, **overrides}
    return Settings(**values)


def new_wallet():
    return EthAccount.create()


def sign(wallet, message: str) -> str:
    """personal_sign the message with an eth_account LocalAccount; returns 0x-hex."""
    signed = wallet.sign_message(encode_defunct(text=message))
    return "0x" + bytes(signed.signature).hex()
