"""
auth/wallet.py -- Wallet challenge-response login (EIP-191 personal_sign).

Flow:
  1. issue_challenge(address) stores a fresh random nonce for the address,
     replacing any earlier one, and returns the exact text the wallet must sign.
  2. The client signs that text with personal_sign.
  3. verify_signature(address, signature) recovers the signer from the
     signature over the stored text, compares it with the claimed address and
     consumes the challenge with a compare-and-swap. Only one request can ever
     consume a given nonce, so a replayed signature fails with NoChallenge even
     though it is cryptographically valid.

Unlinked addresses:
  When the signer has no account, the challenge is still consumed but keeps a
  digest of the verified signature. register_wallet redeems that grant once via
  claim_registration() and creates the account, so the client does not need to
  sign a second message between "needs registration" and "register".

Signature recovery is CPU-bound. Route handlers are sync functions that
FastAPI runs in its thread pool, so recovery never blocks the event loop.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta

from eth_account import Account as EthAccount
from eth_account.messages import encode_defunct
from eth_keys.exceptions import BadSignature
from eth_utils import ValidationError, is_address, to_checksum_address

from auth.errors import (
    ChallengeExpired,
    InvalidAddress,
    InvalidCredentials,
    NoChallenge,
    SignatureMismatch,
    WalletAlreadyRegistered,
)
from auth.models import WalletChallenge, WalletVerification
from auth.store import AccountStore, WalletChallengeStore
from core.clock import Clock, utcnow

logger = logging.getLogger("ledgergate.wallet")

_MESSAGE_TEMPLATE = (
    "{domain} wants you to sign in with your Ethereum account:\n"
    "{address}\n"
    "\n"
    "Sign this message to prove you own this wallet. "
    "It does not send a transaction or cost any gas.\n"
    "\n"
    "Nonce: {nonce}\n"
    "Issued At: {issued_at}\n"
    "Expiration Time: {expires_at}"
)


def normalize_address(address: str) -> str:
    """Return the EIP-55 checksummed form or raise InvalidAddress."""
    candidate = (address or "").strip()
    if not is_address(candidate):
        raise InvalidAddress()
    return to_checksum_address(candidate)


def recover_signer(message: str, signature: str) -> str:
    """Recover the checksummed address that produced `signature` over `message`."""
    # eth-account asserts on an out-of-range v byte; eth-keys rejects bad
    # lengths with ValidationError and unrecoverable points with BadSignature
    try:
        recovered = EthAccount.recover_message(encode_defunct(text=message), signature=signature)
    except (ValueError, TypeError, AssertionError, ValidationError, BadSignature) as exc:
        raise SignatureMismatch() from exc
    return to_checksum_address(recovered)


def _signature_digest(signature: str) -> str:
    normalized = signature.strip().lower().removeprefix("0x")
    return hashlib.sha256(normalized.encode("ascii", "ignore")).hexdigest()


class WalletChallengeService:
    def __init__(
        self,
        challenges: WalletChallengeStore,
        accounts: AccountStore,
        *,
        ttl_seconds: int = 300,
        domain: str = "ledgergate.local",
        clock: Clock = utcnow,
    ) -> None:
        self.challenges = challenges
        self.accounts = accounts
        self.ttl = timedelta(seconds=ttl_seconds)
        self.domain = domain
        self.clock = clock

    def issue_challenge(self, address: str) -> WalletChallenge:
        """Create a fresh nonce for the address, invalidating any earlier one."""
        checksummed = normalize_address(address)
        now = self.clock()
        nonce = secrets.token_hex(16)
        expires_at = now + self.ttl
        challenge = WalletChallenge(
            address=checksummed,
            nonce=nonce,
            message=_MESSAGE_TEMPLATE.format(
                domain=self.domain,
                address=checksummed,
                nonce=nonce,
                issued_at=now.isoformat(),
                expires_at=expires_at.isoformat(),
            ),
            issued_at=now,
            expires_at=expires_at,
        )
        self.challenges.replace(challenge)
        return challenge

    def _live_challenge(self, address: str) -> WalletChallenge:
        challenge = self.challenges.get(address)
        if challenge is None or challenge.consumed:
            raise NoChallenge()
        if self.clock() >= challenge.expires_at:
            # Burn it so the nonce is dead even if the clock later disagrees
            self.challenges.consume(address, challenge.nonce)
            raise ChallengeExpired()
        return challenge

    def verify_signature(self, address: str, signature: str) -> WalletVerification:
        """Check the signature against the live challenge and consume it.

        Returns the linked account, or account=None when the address must be
        registered first.
        """
        checksummed = normalize_address(address)
        challenge = self._live_challenge(checksummed)
        if recover_signer(challenge.message, signature) != checksummed:
            raise SignatureMismatch()

        account = self.accounts.get_by_wallet(checksummed)
        digest = _signature_digest(signature) if account is None else None
        if not self.challenges.consume(checksummed, challenge.nonce, registration_digest=digest):
            # Another request consumed this nonce first
            raise NoChallenge()

        if account is not None and not account.is_active:
            raise InvalidCredentials("This account is disabled.")
        return WalletVerification(address=checksummed, account=account)

    def claim_registration(self, address: str, signature: str) -> str:
        """Prove wallet ownership for registration. Returns the checksummed address.

        Accepts either a signature over a still-live challenge, or the same
        signature that earlier produced a "needs registration" result.
        """
        checksummed = normalize_address(address)
        challenge = self.challenges.get(checksummed)
        if challenge is None:
            raise NoChallenge()

        if not challenge.consumed:
            verification = self.verify_signature(checksummed, signature)
            if verification.account is not None:
                raise WalletAlreadyRegistered()
            challenge = self.challenges.get(checksummed)
            if challenge is None:
                raise NoChallenge()

        if challenge.registration_digest is None or challenge.registration_claimed:
            raise NoChallenge()
        if self.clock() >= challenge.expires_at:
            raise ChallengeExpired()
        digest = _signature_digest(signature)
        if not hmac.compare_digest(digest, challenge.registration_digest):
            raise SignatureMismatch()
        if recover_signer(challenge.message, signature) != checksummed:
            raise SignatureMismatch()
        if not self.challenges.claim_registration(checksummed, challenge.nonce, digest):
            raise NoChallenge()
        logger.info("Wallet registration grant redeemed for %s", checksummed)
        return checksummed
