"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. Each repository owns one table and the
_row_to_* functions are the mappers. Service and route code never touches SQL
directly.

Concurrency:
  Every state transition that must happen at most once is a compare-and-swap:
  an UPDATE whose WHERE clause pins the state the caller observed, followed by
  a rowcount check. rowcount == 1 means this caller won; 0 means another
  request got there first. This keeps contention scoped to one row (address,
  challenge id, token id) with no process-wide lock, and works unchanged on
  any SQL backend.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Refresh tokens and OTP codes are stored only as HMAC digests.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, case, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import (
    Account,
    ChallengePurpose,
    PasswordResetCode,
    RefreshTokenRecord,
    RevokeReason,
    Role,
    TwoFactorChallenge,
    TwoFactorChannel,
    TwoFactorConfig,
    TwoFactorState,
    WalletChallenge,
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("hashed_password", Text),  # NULL for wallet-only accounts
    Column("wallet_address", String(42), unique=True),  # NULL until linked
    Column("role", String(20), nullable=False, server_default="customer"),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("two_factor_channel", String(20), nullable=False, server_default="whatsapp"),
    Column("two_factor_destination", String(64)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_wallet_challenges = Table(
    "wallet_challenges",
    _metadata,
    Column("address", String(42), primary_key=True),  # one live challenge per address
    Column("nonce", String(64), nullable=False),
    Column("message", Text, nullable=False),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Column("registration_digest", String(64)),
    Column("registration_claimed", Integer, nullable=False, server_default="0"),
)

_two_factor_challenges = Table(
    "two_factor_challenges",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
    Column("channel", String(20), nullable=False),
    Column("destination", String(64), nullable=False),
    Column("purpose", String(10), nullable=False),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("attempts_remaining", Integer, nullable=False),
    Column("state", String(10), nullable=False),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("code_hash", String(64), primary_key=True),  # HMAC-SHA256 hex of the reset code
    Column("account_id", Integer, nullable=False, index=True),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token_id", String(64), primary_key=True),  # HMAC-SHA256 hex of the opaque token
    Column("account_id", Integer, nullable=False, index=True),
    Column("family_id", String(32), nullable=False, index=True),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_reason", String(10)),
)


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Create an engine and make sure every auth table exists.

    All repositories share one engine so a single in-memory test database
    holds every table.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account entities.

    Usage:
        store = AccountStore(engine)
        account_id = store.create_account(Account(email="a@example.com", hashed_password=...))
        account = store.get_by_email("a@example.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email or wallet address is
        already taken. Callers treat that as a concurrent-registration signal.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=account.email,
                    first_name=account.first_name,
                    last_name=account.last_name,
                    hashed_password=account.hashed_password,
                    wallet_address=account.wallet_address,
                    role=account.role.value,
                    two_factor_enabled=1 if account.two_factor.enabled else 0,
                    two_factor_channel=account.two_factor.channel.value,
                    two_factor_destination=account.two_factor.destination,
                    is_active=1 if account.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, account_id: int) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by normalised email. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_wallet(self, address: str) -> Account | None:
        """Look up an account by checksummed wallet address."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.wallet_address == address)).fetchone()
        return _row_to_account(row) if row is not None else None

    def link_wallet(self, account_id: int, address: str) -> bool:
        """Attach a wallet to an account that has none. Returns False if already linked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.wallet_address.is_(None)))
                .values(wallet_address=address)
            )
            conn.commit()
        return result.rowcount > 0

    def set_two_factor(self, account_id: int, config: TwoFactorConfig) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    two_factor_enabled=1 if config.enabled else 0,
                    two_factor_channel=config.channel.value,
                    two_factor_destination=config.destination,
                )
            )
            conn.commit()
        return result.rowcount > 0

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable profile fields (first_name, last_name, role, is_active, hashed_password).

        Returns True if a row was updated, False if account_id was not found.
        """
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if isinstance(fields.get("role"), Role):
            fields["role"] = fields["role"].value
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, account_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given account."""
        with self.engine.connect() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(last_login=_now_iso()))
            conn.commit()


# ---------------------------------------------------------------------------
# Wallet challenges
# ---------------------------------------------------------------------------


class WalletChallengeStore:
    """One row per address. Replacing the row invalidates the previous nonce."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def replace(self, challenge: WalletChallenge) -> None:
        """Delete any existing challenge for the address and insert the new one atomically."""
        with self.engine.begin() as conn:
            conn.execute(_wallet_challenges.delete().where(_wallet_challenges.c.address == challenge.address))
            conn.execute(
                _wallet_challenges.insert().values(
                    address=challenge.address,
                    nonce=challenge.nonce,
                    message=challenge.message,
                    issued_at=_iso(challenge.issued_at),
                    expires_at=_iso(challenge.expires_at),
                    consumed=0,
                    registration_claimed=0,
                )
            )

    def get(self, address: str) -> WalletChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _wallet_challenges.select().where(_wallet_challenges.c.address == address)
            ).fetchone()
        return _row_to_wallet_challenge(row) if row is not None else None

    def consume(self, address: str, nonce: str, registration_digest: str | None = None) -> bool:
        """Mark the challenge consumed. Only the first caller for this nonce gets True."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _wallet_challenges.update()
                .where(
                    (_wallet_challenges.c.address == address)
                    & (_wallet_challenges.c.nonce == nonce)
                    & (_wallet_challenges.c.consumed == 0)
                )
                .values(consumed=1, registration_digest=registration_digest)
            )
            conn.commit()
        return result.rowcount == 1

    def claim_registration(self, address: str, nonce: str, registration_digest: str) -> bool:
        """Redeem the registration grant left by a verified-but-unlinked signature. One-shot."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _wallet_challenges.update()
                .where(
                    (_wallet_challenges.c.address == address)
                    & (_wallet_challenges.c.nonce == nonce)
                    & (_wallet_challenges.c.consumed == 1)
                    & (_wallet_challenges.c.registration_digest == registration_digest)
                    & (_wallet_challenges.c.registration_claimed == 0)
                )
                .values(registration_claimed=1)
            )
            conn.commit()
        return result.rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        """Delete challenges whose expiry has passed. Returns number of rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_wallet_challenges.delete().where(_wallet_challenges.c.expires_at < _iso(now)))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Two-factor challenges
# ---------------------------------------------------------------------------


class TwoFactorChallengeStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge:
        challenge.id = challenge.id or uuid.uuid4().hex
        with self.engine.connect() as conn:
            conn.execute(
                _two_factor_challenges.insert().values(
                    id=challenge.id,
                    account_id=challenge.account_id,
                    code_hash=challenge.code_hash,
                    channel=challenge.channel.value,
                    destination=challenge.destination,
                    purpose=challenge.purpose.value,
                    issued_at=_iso(challenge.issued_at),
                    expires_at=_iso(challenge.expires_at),
                    attempts_remaining=challenge.attempts_remaining,
                    state=challenge.state.value,
                )
            )
            conn.commit()
        return challenge

    def get(self, challenge_id: str) -> TwoFactorChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _two_factor_challenges.select().where(_two_factor_challenges.c.id == challenge_id)
            ).fetchone()
        return _row_to_two_factor(row) if row is not None else None

    def latest_for(self, account_id: int, purpose: ChallengePurpose) -> TwoFactorChallenge | None:
        """Return the live challenge for the account and purpose, else the most recent one.

        Pending rows sort first so a frozen or coarse clock cannot hide the
        outstanding challenge behind a terminal one issued at the same instant.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _two_factor_challenges.select()
                .where(
                    (_two_factor_challenges.c.account_id == account_id)
                    & (_two_factor_challenges.c.purpose == purpose.value)
                )
                .order_by(
                    case((_two_factor_challenges.c.state == TwoFactorState.pending.value, 0), else_=1),
                    _two_factor_challenges.c.issued_at.desc(),
                )
                .limit(1)
            ).fetchone()
        return _row_to_two_factor(row) if row is not None else None

    def transition(
        self,
        challenge_id: str,
        *,
        expected_state: TwoFactorState,
        expected_attempts: int,
        new_state: TwoFactorState,
        new_attempts: int,
    ) -> bool:
        """Compare-and-swap on (state, attempts_remaining). True if this caller won."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor_challenges.update()
                .where(
                    (_two_factor_challenges.c.id == challenge_id)
                    & (_two_factor_challenges.c.state == expected_state.value)
                    & (_two_factor_challenges.c.attempts_remaining == expected_attempts)
                )
                .values(state=new_state.value, attempts_remaining=new_attempts)
            )
            conn.commit()
        return result.rowcount == 1

    def expire_pending(self, account_id: int, purpose: ChallengePurpose) -> int:
        """Invalidate every pending challenge for the account. Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor_challenges.update()
                .where(
                    (_two_factor_challenges.c.account_id == account_id)
                    & (_two_factor_challenges.c.purpose == purpose.value)
                    & (_two_factor_challenges.c.state == TwoFactorState.pending.value)
                )
                .values(state=TwoFactorState.expired.value)
            )
            conn.commit()
        return result.rowcount

    def purge_expired(self, now: datetime) -> int:
        """Delete challenges past their TTL, whatever their state."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _two_factor_challenges.delete().where(_two_factor_challenges.c.expires_at < _iso(now))
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Password reset codes
# ---------------------------------------------------------------------------


class PasswordResetStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, record: PasswordResetCode) -> None:
        """Insert a new code after retiring every unused code for the account."""
        with self.engine.begin() as conn:
            conn.execute(
                _password_resets.update()
                .where((_password_resets.c.account_id == record.account_id) & (_password_resets.c.used == 0))
                .values(used=1)
            )
            conn.execute(
                _password_resets.insert().values(
                    code_hash=record.code_hash,
                    account_id=record.account_id,
                    issued_at=_iso(record.issued_at),
                    expires_at=_iso(record.expires_at),
                    used=1 if record.used else 0,
                )
            )

    def get(self, code_hash: str) -> PasswordResetCode | None:
        with self.engine.connect() as conn:
            row = conn.execute(_password_resets.select().where(_password_resets.c.code_hash == code_hash)).fetchone()
        return _row_to_password_reset(row) if row is not None else None

    def consume(self, code_hash: str) -> bool:
        """Mark the code used. Only the first caller gets True."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _password_resets.update()
                .where((_password_resets.c.code_hash == code_hash) & (_password_resets.c.used == 0))
                .values(used=1)
            )
            conn.commit()
        return result.rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_password_resets.delete().where(_password_resets.c.expires_at < _iso(now)))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class TokenStore(Protocol):
    """Revocation-list storage injected into TokenService."""

    def put(self, record: RefreshTokenRecord) -> None: ...

    def get(self, token_id: str) -> RefreshTokenRecord | None: ...

    def revoke(self, token_id: str, reason: RevokeReason) -> bool: ...

    def revoke_family(self, family_id: str, reason: RevokeReason) -> int: ...

    def revoke_account(self, account_id: int, reason: RevokeReason) -> int: ...


class SqlTokenStore:
    """TokenStore backed by the refresh_tokens table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def put(self, record: RefreshTokenRecord) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    token_id=record.token_id,
                    account_id=record.account_id,
                    family_id=record.family_id,
                    issued_at=_iso(record.issued_at),
                    expires_at=_iso(record.expires_at),
                    revoked=1 if record.revoked else 0,
                    revoked_reason=record.revoked_reason.value if record.revoked_reason else None,
                )
            )
            conn.commit()

    def get(self, token_id: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_id == token_id)).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def revoke(self, token_id: str, reason: RevokeReason) -> bool:
        """Revoke one token. True only for the caller that flipped it from live to revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_id == token_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_reason=reason.value)
            )
            conn.commit()
        return result.rowcount == 1

    def revoke_family(self, family_id: str, reason: RevokeReason) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.family_id == family_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_reason=reason.value)
            )
            conn.commit()
        return result.rowcount

    def revoke_account(self, account_id: int, reason: RevokeReason) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_reason=reason.value)
            )
            conn.commit()
        return result.rowcount

    def purge_expired(self, now: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < _iso(now)))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        hashed_password=row.hashed_password,
        wallet_address=row.wallet_address,
        role=Role(row.role),
        two_factor=TwoFactorConfig(
            enabled=bool(row.two_factor_enabled),
            channel=TwoFactorChannel(row.two_factor_channel),
            destination=row.two_factor_destination,
        ),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_wallet_challenge(row) -> WalletChallenge:
    return WalletChallenge(
        address=row.address,
        nonce=row.nonce,
        message=row.message,
        issued_at=_parse(row.issued_at),
        expires_at=_parse(row.expires_at),
        consumed=bool(row.consumed),
        registration_digest=row.registration_digest,
        registration_claimed=bool(row.registration_claimed),
    )


def _row_to_two_factor(row) -> TwoFactorChallenge:
    return TwoFactorChallenge(
        id=row.id,
        account_id=row.account_id,
        code_hash=row.code_hash,
        channel=TwoFactorChannel(row.channel),
        destination=row.destination,
        purpose=ChallengePurpose(row.purpose),
        issued_at=_parse(row.issued_at),
        expires_at=_parse(row.expires_at),
        attempts_remaining=row.attempts_remaining,
        state=TwoFactorState(row.state),
    )


def _row_to_refresh(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token_id=row.token_id,
        account_id=row.account_id,
        family_id=row.family_id,
        issued_at=_parse(row.issued_at),
        expires_at=_parse(row.expires_at),
        revoked=bool(row.revoked),
        revoked_reason=RevokeReason(row.revoked_reason) if row.revoked_reason else None,
    )


def _row_to_password_reset(row) -> PasswordResetCode:
    return PasswordResetCode(
        code_hash=row.code_hash,
        account_id=row.account_id,
        issued_at=_parse(row.issued_at),
        expires_at=_parse(row.expires_at),
        used=bool(row.used),
    )
