"""
auth/errors.py -- Error taxonomy for the authentication core.

Every failure the core can report is an AuthError subclass carrying a stable
machine-readable code, a client-safe message and the HTTP status the API layer
maps it to. Services raise these; api/main.py turns them into the standard
{"error": {code, message, detail}} envelope.

Messages for verification failures are deliberately generic: they never say
which factor was wrong or whether an account exists.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.models import TwoFactorChallenge


class AuthError(Exception):
    code = "auth_error"
    message = "Authentication failed."
    status_code = 400

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or type(self).message
        self.detail = detail
        super().__init__(self.message)


class RateLimited(AuthError):
    code = "rate_limited"
    message = "Too many requests. Please try again later."
    status_code = 429

    def __init__(self, reset_at: datetime, *, remaining: int = 0, message: str | None = None) -> None:
        super().__init__(message)
        self.reset_at = reset_at
        self.remaining = remaining


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."
    status_code = 401


class InvalidAddress(AuthError):
    code = "invalid_address"
    message = "Wallet address is not valid."
    status_code = 400


class NoChallenge(AuthError):
    code = "no_challenge"
    message = "No active challenge. Request a new one."
    status_code = 400


class ChallengeExpired(AuthError):
    code = "challenge_expired"
    message = "Challenge has expired. Request a new one."
    status_code = 400


class SignatureMismatch(AuthError):
    code = "invalid_signature"
    message = "Invalid signature."
    status_code = 401


class CodeMismatch(AuthError):
    code = "invalid_code"
    message = "Invalid verification code."
    status_code = 401

    def __init__(self, attempts_remaining: int, message: str | None = None) -> None:
        super().__init__(message, detail=f"{attempts_remaining} attempt(s) remaining.")
        self.attempts_remaining = attempts_remaining


class TwoFactorExpired(AuthError):
    code = "two_factor_expired"
    message = "Verification code has expired. Request a new code."
    status_code = 400


class TwoFactorExhausted(AuthError):
    code = "two_factor_exhausted"
    message = "Too many incorrect codes. Request a new code."
    status_code = 400


class TwoFactorNotEnabled(AuthError):
    code = "two_factor_not_enabled"
    message = "Two-factor authentication is not enabled for this account."
    status_code = 400


class ResendTooSoon(AuthError):
    code = "resend_too_soon"
    message = "A new code cannot be sent yet."
    status_code = 429

    def __init__(self, available_at: datetime, message: str | None = None) -> None:
        super().__init__(message)
        self.available_at = available_at


class OtpDeliveryFailed(AuthError):
    """Delivery collaborator failed. The challenge itself stays pending."""

    code = "delivery_failed"
    message = "Verification code could not be delivered."
    status_code = 502

    def __init__(self, challenge: TwoFactorChallenge, message: str | None = None) -> None:
        super().__init__(message)
        self.challenge = challenge


class TokenInvalid(AuthError):
    code = "token_invalid"
    message = "Invalid or expired token."
    status_code = 401


class TokenRevoked(AuthError):
    code = "token_revoked"
    message = "Token has been revoked. Please sign in again."
    status_code = 401


class TokenExpired(AuthError):
    code = "token_expired"
    message = "Token has expired."
    status_code = 401


class AccountNotFound(AuthError):
    code = "account_not_found"
    message = "Account not found."
    status_code = 404


class EmailAlreadyRegistered(AuthError):
    code = "email_exists"
    message = "This email is already registered."
    status_code = 409


class WalletAlreadyRegistered(AuthError):
    code = "wallet_exists"
    message = "This wallet address is already registered."
    status_code = 409


class PermissionDenied(AuthError):
    code = "forbidden"
    message = "You do not have access to this resource."
    status_code = 403


class PasswordTooLong(AuthError):
    code = "password_too_long"
    message = "Password must be at most 72 bytes."
    status_code = 400


class ResetCodeInvalid(AuthError):
    code = "invalid_reset_code"
    message = "Invalid or expired reset code."
    status_code = 400
