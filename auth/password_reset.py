"""
auth/password_reset.py -- "Forgot password" reset codes.

request_reset(email) issues a random single-use code, stores only
HMAC-SHA256(secret_key, code) with a TTL and hands the code to a
ResetCodeSender. Unknown, disabled and wallet-only emails return the same
way as real ones, so the endpoint never reveals whether an account exists.

confirm_reset(code, new_password) redeems the code with a compare-and-swap and
replaces the password hash. Issuing a new code retires every earlier unused
code for the account.

Revoking refresh tokens after a reset is the orchestrator's job.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta

from auth.credentials import hash_password, normalize_email, password_too_long
from auth.delivery import DeliveryError, ResetCodeSender, mask_email
from auth.errors import PasswordTooLong, ResetCodeInvalid
from auth.models import Account, PasswordResetCode
from auth.store import AccountStore, PasswordResetStore
from core.clock import Clock, utcnow

logger = logging.getLogger("ledgergate.password_reset")


class PasswordResetService:
    def __init__(
        self,
        resets: PasswordResetStore,
        accounts: AccountStore,
        sender: ResetCodeSender,
        *,
        secret_key: str,
        ttl_seconds: int = 3600,
        delivery_timeout_seconds: float = 10.0,
        clock: Clock = utcnow,
    ) -> None:
        self.resets = resets
        self.accounts = accounts
        self.sender = sender
        self._secret = secret_key.encode()
        self.ttl_seconds = ttl_seconds
        self.delivery_timeout_seconds = delivery_timeout_seconds
        self.clock = clock

    def _hash_code(self, code: str) -> str:
        return hmac.new(self._secret, f"reset:{code}".encode(), hashlib.sha256).hexdigest()

    def request_reset(self, email: str) -> None:
        account = self.accounts.get_by_email(normalize_email(email))
        if account is None or not account.is_active or account.hashed_password is None:
            logger.info("Password reset requested for unknown or ineligible email %s", mask_email(email))
            return

        code = secrets.token_hex(32)
        now = self.clock()
        self.resets.create(
            PasswordResetCode(
                code_hash=self._hash_code(code),
                account_id=account.id,
                issued_at=now,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
            )
        )
        try:
            self.sender.send_reset_code(account.email, code, self.ttl_seconds, timeout=self.delivery_timeout_seconds)
        except DeliveryError:
            # The caller always gets the same answer; the user can ask again
            logger.warning("Reset code for account=%s could not be delivered", account.id)

    def confirm_reset(self, code: str, new_password: str) -> Account:
        """Redeem a reset code and set the new password. Returns the updated account."""
        if password_too_long(new_password):
            raise PasswordTooLong()
        code_hash = self._hash_code(code.strip())
        record = self.resets.get(code_hash)
        if record is None or record.used or self.clock() >= record.expires_at:
            raise ResetCodeInvalid()
        account = self.accounts.get_by_id(record.account_id)
        if account is None or not account.is_active:
            raise ResetCodeInvalid()
        if not self.resets.consume(code_hash):
            raise ResetCodeInvalid()

        self.accounts.update_account(account.id, hashed_password=hash_password(new_password))
        logger.info("Password reset completed for account=%s", account.id)
        return self.accounts.get_by_id(account.id)
