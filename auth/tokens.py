"""
auth/tokens.py -- Access/refresh token issuance, rotation and revocation.

Security design decisions:
  Access tokens: python-jose HS256 JWTs signed with SECRET_KEY, carrying
       sub (account id), role, typ="access", iat, exp and jti. Verification is
       pure: signature, type and expiry only, no store lookup. Expiry is
       checked against the injected clock rather than jose's wall clock so the
       whole service agrees on "now".

  Refresh tokens: secrets.token_urlsafe(32) -- opaque, 256 bits of entropy.
       The store keeps HMAC-SHA256(SECRET_KEY, token) only, so a leaked
       database cannot be replayed without the key. Lookup by digest is O(1).

  Rotation: presenting a refresh token revokes it (reason "rotated") and
       issues a new pair in the same family_id. Revocation is a
       compare-and-swap, so two concurrent refreshes of one token cannot both
       succeed; the loser is handled exactly like a replay.

  Replay detection: presenting a token that was already rotated means two
       parties hold it. The whole family is revoked and the caller gets the
       generic TokenInvalid -- no distinct "theft detected" signal.

  Pending-login (2FA) and 2FA-setup tokens are JWTs with their own typ and
       are rejected wherever an access token is expected.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import TokenExpired, TokenInvalid, TokenRevoked
from auth.models import (
    AccessClaims,
    Account,
    RefreshTokenRecord,
    RevokeReason,
    Role,
    TokenPair,
    TwoFactorChannel,
)
from auth.store import AccountStore, TokenStore
from core.clock import Clock, utcnow

logger = logging.getLogger("ledgergate.tokens")

_ALGORITHM = "HS256"

_TYP_ACCESS = "access"
_TYP_TWO_FACTOR = "2fa_pending"
_TYP_SETUP = "2fa_setup"


def _ts(value: datetime) -> int:
    return int(value.timestamp())


def _from_ts(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TokenService:
    def __init__(
        self,
        store: TokenStore,
        accounts: AccountStore,
        *,
        secret_key: str,
        access_ttl_seconds: int = 900,
        refresh_ttl_days: int = 7,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self._secret = secret_key
        self.access_ttl = timedelta(seconds=access_ttl_seconds)
        self.refresh_ttl = timedelta(days=refresh_ttl_days)
        self.clock = clock

    # ------------------------------------------------------------------
    # JWT helpers
    # ------------------------------------------------------------------

    def _encode(self, payload: dict) -> str:
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def _decode(self, token: str, typ: str) -> dict:
        """Decode a JWT of the given type. Raises TokenInvalid or TokenExpired."""
        try:
            payload = jwt.decode(token, self._secret, algorithms=[_ALGORITHM], options={"verify_exp": False})
        except JWTError as exc:
            raise TokenInvalid() from exc
        if payload.get("typ") != typ or "exp" not in payload or "sub" not in payload:
            raise TokenInvalid()
        try:
            expires_at = _from_ts(int(payload["exp"]))
        except (TypeError, ValueError) as exc:
            raise TokenInvalid() from exc
        if self.clock() >= expires_at:
            raise TokenExpired()
        return payload

    def _hash_refresh(self, refresh_token: str) -> str:
        return hmac.new(self._secret.encode(), refresh_token.encode(), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Issue / verify
    # ------------------------------------------------------------------

    def issue(self, account: Account, *, family_id: str | None = None) -> TokenPair:
        """Issue a new access/refresh pair. A new login starts a new family."""
        now = self.clock()
        access_expires_at = now + self.access_ttl
        access_token = self._encode(
            {
                "sub": str(account.id),
                "role": account.role.value,
                "typ": _TYP_ACCESS,
                "iat": _ts(now),
                "exp": _ts(access_expires_at),
                "jti": uuid.uuid4().hex,
            }
        )

        refresh_token = secrets.token_urlsafe(32)
        refresh_expires_at = now + self.refresh_ttl
        self.store.put(
            RefreshTokenRecord(
                token_id=self._hash_refresh(refresh_token),
                account_id=account.id,
                family_id=family_id or uuid.uuid4().hex,
                issued_at=now,
                expires_at=refresh_expires_at,
            )
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=_from_ts(_ts(access_expires_at)),
            refresh_expires_at=refresh_expires_at,
            issued_at=now,
        )

    def verify(self, access_token: str) -> AccessClaims:
        """Pure check of an access token. Raises TokenInvalid or TokenExpired."""
        payload = self._decode(access_token, _TYP_ACCESS)
        try:
            return AccessClaims(
                account_id=int(payload["sub"]),
                role=Role(payload["role"]),
                exp=_from_ts(int(payload["exp"])),
                jti=str(payload.get("jti", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid() from exc

    # ------------------------------------------------------------------
    # Refresh rotation
    # ------------------------------------------------------------------

    def _replay_detected(self, record: RefreshTokenRecord) -> TokenInvalid:
        revoked = self.store.revoke_family(record.family_id, RevokeReason.family)
        logger.warning(
            "Refresh token replay detected account=%s family=%s; revoked %d live token(s)",
            record.account_id,
            record.family_id,
            revoked,
        )
        return TokenInvalid()

    def refresh(self, refresh_token: str) -> tuple[TokenPair, Account]:
        """Rotate a refresh token. Returns the new pair and the account it belongs to.

        Raises:
            TokenInvalid -- unknown token, replayed token, or account gone/disabled.
            TokenRevoked -- token revoked by logout or account-wide revocation.
            TokenExpired -- token past its expiry.
        """
        record = self.store.get(self._hash_refresh(refresh_token))
        if record is None:
            raise TokenInvalid()

        if record.revoked:
            if record.revoked_reason in (RevokeReason.rotated, RevokeReason.family):
                raise self._replay_detected(record)
            raise TokenRevoked()

        if self.clock() >= record.expires_at:
            raise TokenExpired()

        account = self.accounts.get_by_id(record.account_id)
        if account is None or not account.is_active:
            self.store.revoke_family(record.family_id, RevokeReason.account)
            raise TokenInvalid()

        if not self.store.revoke(record.token_id, RevokeReason.rotated):
            # A concurrent refresh won the swap: the same token was presented twice
            raise self._replay_detected(record)

        return self.issue(account, family_id=record.family_id), account

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def family_of(self, refresh_token: str) -> RefreshTokenRecord | None:
        return self.store.get(self._hash_refresh(refresh_token))

    def revoke(
        self,
        *,
        account_id: int | None = None,
        family_id: str | None = None,
        reason: RevokeReason = RevokeReason.logout,
    ) -> int:
        """Revoke every live refresh token of an account or of one family. Idempotent."""
        if account_id is None and family_id is None:
            raise ValueError("revoke() needs account_id or family_id")
        count = 0
        if family_id is not None:
            count += self.store.revoke_family(family_id, reason)
        if account_id is not None:
            count += self.store.revoke_account(account_id, reason)
        return count

    # ------------------------------------------------------------------
    # Two-factor pending-login and setup tokens
    # ------------------------------------------------------------------

    def issue_two_factor_token(self, account_id: int, expires_at: datetime) -> str:
        """Token the client presents with its OTP to finish a parked login."""
        return self._encode(
            {
                "sub": str(account_id),
                "typ": _TYP_TWO_FACTOR,
                "iat": _ts(self.clock()),
                "exp": _ts(expires_at),
                "jti": uuid.uuid4().hex,
            }
        )

    def read_two_factor_token(self, token: str) -> int:
        """Return the account id of a pending login. Any failure is TokenInvalid."""
        try:
            payload = self._decode(token, _TYP_TWO_FACTOR)
        except TokenExpired as exc:
            raise TokenInvalid() from exc
        try:
            return int(payload["sub"])
        except (TypeError, ValueError) as exc:
            raise TokenInvalid() from exc

    def issue_setup_token(
        self, account_id: int, channel: TwoFactorChannel, destination: str, expires_at: datetime
    ) -> str:
        """Token that binds a 2FA enrolment to the destination the setup code was sent to."""
        return self._encode(
            {
                "sub": str(account_id),
                "typ": _TYP_SETUP,
                "chn": channel.value,
                "dst": destination,
                "iat": _ts(self.clock()),
                "exp": _ts(expires_at),
            }
        )

    def read_setup_token(self, token: str, account_id: int) -> tuple[TwoFactorChannel, str]:
        try:
            payload = self._decode(token, _TYP_SETUP)
        except TokenExpired as exc:
            raise TokenInvalid() from exc
        if payload.get("sub") != str(account_id):
            raise TokenInvalid()
        try:
            return TwoFactorChannel(payload["chn"]), str(payload["dst"])
        except (KeyError, ValueError) as exc:
            raise TokenInvalid() from exc
