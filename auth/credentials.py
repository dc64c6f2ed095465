"""
auth/credentials.py -- Password hashing and email/password verification.

Passwords: bcrypt, used directly (no passlib wrapper). bcrypt.checkpw is a
constant-time comparison and its cost factor makes offline brute force
expensive. bcrypt 5 rejects input longer than 72 bytes outright, so
hash_password() refuses such passwords with PasswordTooLong and the API
models reject them before they get here. The limit counts UTF-8 bytes, not
characters.

Timing equalization: CredentialStore.verify() always runs bcrypt, against
_DUMMY_HASH when the email is unknown or the account has no password, so
response time does not reveal whether an account exists. All failure modes
raise the same InvalidCredentials.

Raw passwords are never logged.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

import bcrypt

from auth.errors import InvalidCredentials, PasswordTooLong
from auth.models import Account
from auth.store import AccountStore

logger = logging.getLogger("ledgergate.auth")


MAX_PASSWORD_BYTES = 72


def password_too_long(plain: str) -> bool:
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises PasswordTooLong above MAX_PASSWORD_BYTES.
    """
    if password_too_long(plain):
        raise PasswordTooLong()
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash, or a candidate over 72 bytes
        return False


def normalize_email(email: str) -> str:
    return email.strip().lower()


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("ledgergate_timing_dummy")


class CredentialStore:
    """Email/password verification. Read-only: never mutates account state."""

    def __init__(self, accounts: AccountStore) -> None:
        self.accounts = accounts

    def verify(self, email: str, password: str) -> Account:
        """Return the matching active Account or raise InvalidCredentials."""
        account = self.accounts.get_by_email(normalize_email(email))
        if account is None or account.hashed_password is None:
            # Do NOT return early before running bcrypt
            verify_password(password, _DUMMY_HASH)
            raise InvalidCredentials()
        if not verify_password(password, account.hashed_password):
            raise InvalidCredentials()
        if not account.is_active:
            logger.info("Login refused for disabled account id=%s", account.id)
            raise InvalidCredentials()
        return account
