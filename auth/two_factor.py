"""
auth/two_factor.py -- OTP challenge state machine.

States (per challenge instance):

    Disabled --start--> Pending --correct code--------> Verified
                           |----TTL elapsed-----------> Expired
                           |----attempts reach zero---> Exhausted
                           '----superseded by resend--> Expired

Verified, Expired and Exhausted are terminal. A terminal challenge rejects
every submission, including the correct code; the caller must resend (or log
in again) to get a fresh challenge.

Atomicity: every transition is a compare-and-swap on (state,
attempts_remaining) in the store. If two verifications race, exactly one wins
the swap; the loser re-reads the row and is evaluated against the new state,
so a single code can never pass twice and a decrement is never lost.

Codes are stored as HMAC-SHA256(secret_key, challenge_id:code). The clear code
exists only in memory long enough to hand to the OtpSender.

Resend countdown is a pure function of (now, issued_at, cooldown) -- see
resend_available_at() and seconds_until_resend(). The server enforces it;
clients only display it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import math
import secrets
import uuid
from datetime import datetime, timedelta

from auth.delivery import DeliveryError, OtpSender, mask_destination, render_otp_message
from auth.errors import (
    CodeMismatch,
    NoChallenge,
    OtpDeliveryFailed,
    ResendTooSoon,
    TwoFactorExhausted,
    TwoFactorExpired,
    TwoFactorNotEnabled,
)
from auth.models import Account, ChallengePurpose, TwoFactorChallenge, TwoFactorChannel, TwoFactorState
from auth.store import TwoFactorChallengeStore
from core.clock import Clock, utcnow

logger = logging.getLogger("ledgergate.twofactor")


def resend_available_at(issued_at: datetime, cooldown_seconds: int) -> datetime:
    return issued_at + timedelta(seconds=cooldown_seconds)


def seconds_until_resend(now: datetime, issued_at: datetime, cooldown_seconds: int) -> int:
    """Whole seconds the client must still wait before asking for a new code (0 = now)."""
    remaining = (resend_available_at(issued_at, cooldown_seconds) - now).total_seconds()
    return max(0, math.ceil(remaining))


class TwoFactorController:
    def __init__(
        self,
        challenges: TwoFactorChallengeStore,
        sender: OtpSender,
        *,
        secret_key: str,
        code_length: int = 6,
        ttl_seconds: int = 120,
        max_attempts: int = 5,
        resend_cooldown_seconds: int = 30,
        delivery_timeout_seconds: float = 10.0,
        clock: Clock = utcnow,
    ) -> None:
        self.challenges = challenges
        self.sender = sender
        self._secret = secret_key.encode()
        self.code_length = code_length
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self.resend_cooldown_seconds = resend_cooldown_seconds
        self.delivery_timeout_seconds = delivery_timeout_seconds
        self.clock = clock

    def _hash_code(self, challenge_id: str, code: str) -> str:
        return hmac.new(self._secret, f"{challenge_id}:{code}".encode(), hashlib.sha256).hexdigest()

    def _generate_code(self) -> str:
        return f"{secrets.randbelow(10**self.code_length):0{self.code_length}d}"

    # ------------------------------------------------------------------
    # Start / resend
    # ------------------------------------------------------------------

    def start_challenge(
        self,
        account: Account,
        *,
        purpose: ChallengePurpose = ChallengePurpose.login,
        channel: TwoFactorChannel | None = None,
        destination: str | None = None,
    ) -> TwoFactorChallenge:
        """Create a fresh pending challenge and request delivery of its code.

        Login challenges go to the account's configured destination and
        require 2FA to be enabled. Setup challenges go to the destination being
        enrolled. Any pending challenge of the same purpose is superseded.

        Raises OtpDeliveryFailed (carrying the persisted challenge) when the
        sender fails; the challenge stays pending until its TTL.
        """
        if purpose is ChallengePurpose.login:
            if not account.two_factor.enabled:
                raise TwoFactorNotEnabled()
            channel = account.two_factor.channel
            destination = account.two_factor.destination
        if not destination or channel is None:
            raise TwoFactorNotEnabled("No verification destination is configured.")

        self.invalidate(account.id, purpose)

        now = self.clock()
        challenge_id = uuid.uuid4().hex
        code = self._generate_code()
        challenge = self.challenges.create(
            TwoFactorChallenge(
                id=challenge_id,
                account_id=account.id,
                code_hash=self._hash_code(challenge_id, code),
                channel=channel,
                destination=destination,
                purpose=purpose,
                issued_at=now,
                expires_at=now + timedelta(seconds=self.ttl_seconds),
                attempts_remaining=self.max_attempts,
            )
        )
        try:
            self.sender.send(
                channel,
                destination,
                render_otp_message(code, self.ttl_seconds),
                timeout=self.delivery_timeout_seconds,
            )
        except DeliveryError as exc:
            logger.warning(
                "OTP delivery failed account=%s destination=%s; challenge %s left pending",
                account.id,
                mask_destination(destination),
                challenge.id,
            )
            raise OtpDeliveryFailed(challenge) from exc
        return challenge

    def resend(self, account: Account, *, purpose: ChallengePurpose = ChallengePurpose.login) -> TwoFactorChallenge:
        """Invalidate the outstanding challenge and start a new one.

        Enforces the resend cooldown from the latest challenge's issue time.
        Route-level rate limiting still applies on top of this.
        """
        latest = self.challenges.latest_for(account.id, purpose)
        if latest is None and purpose is ChallengePurpose.setup:
            raise NoChallenge()
        if latest is not None:
            available_at = resend_available_at(latest.issued_at, self.resend_cooldown_seconds)
            if self.clock() < available_at:
                raise ResendTooSoon(available_at)
        if purpose is ChallengePurpose.setup:
            return self.start_challenge(
                account, purpose=purpose, channel=latest.channel, destination=latest.destination
            )
        return self.start_challenge(account, purpose=purpose)

    def latest_for(self, account_id: int, purpose: ChallengePurpose = ChallengePurpose.login) -> TwoFactorChallenge | None:
        return self.challenges.latest_for(account_id, purpose)

    def invalidate(self, account_id: int, purpose: ChallengePurpose = ChallengePurpose.login) -> int:
        """Expire every pending challenge of the given purpose. Returns the count."""
        return self.challenges.expire_pending(account_id, purpose)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, challenge_id: str, submitted_code: str) -> TwoFactorChallenge:
        """Check a submitted code. Returns the challenge in state verified, or raises.

        Raises:
            NoChallenge        -- unknown challenge id.
            TwoFactorExpired   -- TTL elapsed, superseded, or already verified.
            TwoFactorExhausted -- attempt budget used up (including by this call).
            CodeMismatch       -- wrong code, attempts remain.
        """
        while True:
            challenge = self.challenges.get(challenge_id)
            if challenge is None:
                raise NoChallenge()
            if challenge.state is TwoFactorState.exhausted:
                raise TwoFactorExhausted()
            if challenge.state is TwoFactorState.expired:
                raise TwoFactorExpired()
            if challenge.state is TwoFactorState.verified:
                raise TwoFactorExpired("This code has already been used.")

            attempts = challenge.attempts_remaining
            if self.clock() >= challenge.expires_at:
                if self.challenges.transition(
                    challenge_id,
                    expected_state=TwoFactorState.pending,
                    expected_attempts=attempts,
                    new_state=TwoFactorState.expired,
                    new_attempts=attempts,
                ):
                    raise TwoFactorExpired()
                continue

            expected = self._hash_code(challenge_id, submitted_code.strip())
            if hmac.compare_digest(expected, challenge.code_hash):
                if self.challenges.transition(
                    challenge_id,
                    expected_state=TwoFactorState.pending,
                    expected_attempts=attempts,
                    new_state=TwoFactorState.verified,
                    new_attempts=attempts,
                ):
                    challenge.state = TwoFactorState.verified
                    return challenge
                continue

            remaining = attempts - 1
            new_state = TwoFactorState.exhausted if remaining <= 0 else TwoFactorState.pending
            if self.challenges.transition(
                challenge_id,
                expected_state=TwoFactorState.pending,
                expected_attempts=attempts,
                new_state=new_state,
                new_attempts=max(remaining, 0),
            ):
                if new_state is TwoFactorState.exhausted:
                    logger.warning("2FA challenge %s exhausted for account=%s", challenge_id, challenge.account_id)
                    raise TwoFactorExhausted()
                raise CodeMismatch(remaining)
            # Lost the swap to a concurrent submission; re-read and re-evaluate
