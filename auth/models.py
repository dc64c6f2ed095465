"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Dataclasses own
domain shape; stores, services and routes do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Closed set of account roles. Match exhaustively, never on raw strings."""

    admin = "admin"
    supplier = "supplier"
    manager = "manager"
    customer = "customer"


class TwoFactorChannel(str, Enum):
    whatsapp = "whatsapp"
    sms = "sms"


class TwoFactorState(str, Enum):
    pending = "pending"
    verified = "verified"
    expired = "expired"
    exhausted = "exhausted"


class ChallengePurpose(str, Enum):
    login = "login"
    setup = "setup"


class RevokeReason(str, Enum):
    rotated = "rotated"  # replaced by a newer token in the same family
    logout = "logout"
    family = "family"  # whole lineage revoked (replay or compromise)
    account = "account"


class AuthStatus(str, Enum):
    authenticated = "authenticated"
    pending_two_factor = "pending_two_factor"
    needs_registration = "needs_registration"


@dataclass
class TwoFactorConfig:
    enabled: bool = False
    channel: TwoFactorChannel = TwoFactorChannel.whatsapp
    destination: str | None = None  # phone number in E.164 form


@dataclass
class Account:
    """Root identity entity.

    hashed_password is None for wallet-only accounts. wallet_address is the
    EIP-55 checksummed form and is unique when present. Accounts are never
    deleted; is_active=False soft-disables them.
    """

    email: str
    role: Role = Role.customer
    id: int | None = None
    first_name: str = ""
    last_name: str = ""
    hashed_password: str | None = None
    wallet_address: str | None = None
    two_factor: TwoFactorConfig = field(default_factory=TwoFactorConfig)
    is_active: bool = True
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class WalletChallenge:
    """One-time nonce bound to a wallet address.

    registration_digest is set only when the signature verified but no account
    is linked to the address; wallet registration redeems it once.
    """

    address: str
    nonce: str
    message: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False
    registration_digest: str | None = None
    registration_claimed: bool = False


@dataclass
class WalletVerification:
    """Outcome of a verified wallet signature. account is None when unlinked."""

    address: str
    account: Account | None = None


@dataclass
class TwoFactorChallenge:
    account_id: int
    code_hash: str
    channel: TwoFactorChannel
    destination: str
    issued_at: datetime
    expires_at: datetime
    attempts_remaining: int
    purpose: ChallengePurpose = ChallengePurpose.login
    state: TwoFactorState = TwoFactorState.pending
    id: str = ""


@dataclass
class PasswordResetCode:
    """Single-use password reset code. Only an HMAC of the code is stored."""

    code_hash: str
    account_id: int
    issued_at: datetime
    expires_at: datetime
    used: bool = False


@dataclass
class RefreshTokenRecord:
    """Server-side refresh token row. token_id is an HMAC of the opaque token."""

    token_id: str
    account_id: int
    family_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_reason: RevokeReason | None = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    issued_at: datetime
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password


@dataclass(frozen=True)
class AccessClaims:
    account_id: int
    role: Role
    exp: datetime
    jti: str


@dataclass(frozen=True)
class Admission:
    """Result of one rate-limit admission check for (route, identity)."""

    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int


@dataclass
class AuthResult:
    """What every login-shaped flow returns to the transport layer."""

    status: AuthStatus
    account: Account | None = None
    tokens: TokenPair | None = None
    two_factor_token: str | None = None
    two_factor_expires_at: datetime | None = None
    delivered: bool | None = None
    address: str | None = None


@dataclass(frozen=True)
class TwoFactorSetup:
    """Handle returned when a destination is being enrolled for 2FA."""

    setup_token: str
    expires_at: datetime
    delivered: bool
