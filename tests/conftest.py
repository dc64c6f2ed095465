"""
tests/conftest.py -- Shared test fixtures for LedgerGate.

This module provides:
  - clock: a FrozenClock (tests/helpers.py) injected into every service
  - services: every store and service, including a SessionOrchestrator,
    wired over one fresh database
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app, install_services
from auth.credentials import CredentialStore, hash_password
from auth.delivery import OutboxSender
from auth.models import Account, Role, TwoFactorChannel, TwoFactorConfig
from auth.password_reset import PasswordResetService
from auth.rate_limit import RateLimiter
from auth.session import SessionOrchestrator
from auth.store import (
    AccountStore,
    PasswordResetStore,
    SqlTokenStore,
    TwoFactorChallengeStore,
    WalletChallengeStore,
)
from auth.tokens import TokenService
from auth.two_factor import TwoFactorController
from auth.wallet import WalletChallengeService
from tests.helpers import PASSWORD, PHONE, TEST_SECRET, FrozenClock, make_engine, make_settings


@dataclass
class Services:
    clock: FrozenClock
    engine: object
    accounts: AccountStore
    wallet_challenges: WalletChallengeStore
    two_factor_challenges: TwoFactorChallengeStore
    reset_codes: PasswordResetStore
    token_store: SqlTokenStore
    sender: OutboxSender
    notifier: MagicMock
    limiter: RateLimiter
    credentials: CredentialStore
    wallet: WalletChallengeService
    two_factor: TwoFactorController
    tokens: TokenService
    password_resets: PasswordResetService
    session: SessionOrchestrator

    def create_account(
        self,
        email: str = "alice@example.com",
        *,
        password: str | None = PASSWORD,
        wallet_address: str | None = None,
        role: Role = Role.customer,
        two_factor: bool = False,
    ) -> Account:
        account_id = self.accounts.create_account(
            Account(
                email=email,
                hashed_password=hash_password(password) if password else None,
                wallet_address=wallet_address,
                role=role,
                two_factor=TwoFactorConfig(
                    enabled=two_factor,
                    channel=TwoFactorChannel.whatsapp,
                    destination=PHONE if two_factor else None,
                ),
            )
        )
        return self.accounts.get_by_id(account_id)


# ---------------------------------------------------------------------------
# Function-scoped fixtures -- a fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def services(clock: FrozenClock) -> Generator[Services, None, None]:
    """Every store and service wired over one fresh database and the frozen clock."""
    engine = make_engine()
    accounts = AccountStore(engine)
    wallet_challenges = WalletChallengeStore(engine)
    two_factor_challenges = TwoFactorChallengeStore(engine)
    reset_codes = PasswordResetStore(engine)
    token_store = SqlTokenStore(engine)
    sender = OutboxSender()
    notifier = MagicMock()
    limiter = RateLimiter(make_settings().route_limits())
    credentials = CredentialStore(accounts)
    wallet = WalletChallengeService(wallet_challenges, accounts, ttl_seconds=300, clock=clock)
    two_factor = TwoFactorController(two_factor_challenges, sender, secret_key=TEST_SECRET, clock=clock)
    tokens = TokenService(token_store, accounts, secret_key=TEST_SECRET, clock=clock)
    password_resets = PasswordResetService(reset_codes, accounts, sender, secret_key=TEST_SECRET, clock=clock)
    session = SessionOrchestrator(
        limiter=limiter,
        accounts=accounts,
        credentials=credentials,
        wallet=wallet,
        two_factor=two_factor,
        tokens=tokens,
        notifier=notifier,
        password_resets=password_resets,
        clock=clock,
    )
    yield Services(
        clock=clock,
        engine=engine,
        accounts=accounts,
        wallet_challenges=wallet_challenges,
        two_factor_challenges=two_factor_challenges,
        reset_codes=reset_codes,
        token_store=token_store,
        sender=sender,
        notifier=notifier,
        limiter=limiter,
        credentials=credentials,
        wallet=wallet,
        two_factor=two_factor,
        tokens=tokens,
        password_resets=password_resets,
        session=session,
    )
    engine.dispose()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, sender: OutboxSender, clock: FrozenClock):
    """Return an async context manager that replaces the real lifespan.

    Wires a test database, the outbox sender and the frozen clock into
    app.state so TestClient routes never touch the production database, the
    WhatsApp API or the email API. One outbox carries OTPs and reset codes.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        install_services(app, make_settings(), engine=engine, sender=sender, reset_sender=sender, clock=clock)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiHarness:
    client: TestClient
    clock: FrozenClock
    sender: OutboxSender

    @property
    def state(self):
        return self.client.app.state

    def create_account(self, email: str, *, password: str = PASSWORD, two_factor: bool = False) -> Account:
        account_id = self.state.account_store.create_account(
            Account(
                email=email,
                hashed_password=hash_password(password),
                two_factor=TwoFactorConfig(enabled=two_factor, destination=PHONE if two_factor else None),
            )
        )
        return self.state.account_store.get_by_id(account_id)

    def login(self, email: str, password: str = PASSWORD) -> dict:
        resp = self.client.post("/api/v1/auth/login/credential", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()

    def bearer(self, email: str, password: str = PASSWORD) -> dict[str, str]:
        tokens = self.login(email, password)["tokens"]
        return {"Authorization": f"Bearer {tokens['accessToken']}"}


@pytest.fixture(scope="module")
def api_client() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness over the real FastAPI app with a patched lifespan.

    Tests hit real route handlers but use an isolated in-memory database, an
    in-memory outbox and a frozen clock.
    """
    engine = make_engine("api")
    sender = OutboxSender()
    clock = FrozenClock()
    app.router.lifespan_context = _patch_lifespan(engine, sender, clock)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, clock=clock, sender=sender)

    engine.dispose()
