"""
auth/session.py -- SessionOrchestrator: the login flows end to end.

Every public method follows the same ordered steps:

  1. RateLimiter.admit(route, identity). A refusal raises RateLimited before
     any other validation, so a throttled caller learns nothing and costs
     nothing.
  2. Identity proof (password, wallet signature, OTP, refresh token).
  3. State changes, in order: persist -> issue tokens -> notify.

Nothing happens implicitly in persistence hooks. Each side effect is a
separate call here, and a notification failure is logged without failing the
flow that triggered it.

Bearer flows (two-factor enrolment, password change, current account) take
the raw access token and check it only after admission, so a caller flooding
a route with bad tokens is throttled like any other.

Two-factor gating: when the account has 2FA enabled the flow is parked. The
caller receives a pending-login token (no access/refresh tokens) and must
present it with the OTP to complete_two_factor(). The orchestrator never
restarts a terminal challenge on the caller's behalf.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.credentials import CredentialStore, hash_password, normalize_email, verify_password
from auth.errors import (
    AccountNotFound,
    EmailAlreadyRegistered,
    InvalidCredentials,
    NoChallenge,
    OtpDeliveryFailed,
    RateLimited,
    TokenInvalid,
    TwoFactorNotEnabled,
    WalletAlreadyRegistered,
)
from auth.models import (
    Account,
    AuthResult,
    AuthStatus,
    ChallengePurpose,
    RevokeReason,
    Role,
    TwoFactorChallenge,
    TwoFactorChannel,
    TwoFactorConfig,
    TwoFactorSetup,
    WalletChallenge,
)
from auth.notifications import (
    PASSWORD_CHANGED,
    TWO_FACTOR_DISABLED,
    TWO_FACTOR_ENABLED,
    WALLET_LOGIN,
    Notifier,
)
from auth.password_reset import PasswordResetService
from auth.rate_limit import RateLimiter
from auth.store import AccountStore
from auth.tokens import TokenService
from auth.two_factor import TwoFactorController
from auth.wallet import WalletChallengeService, normalize_address
from core.clock import Clock, utcnow

logger = logging.getLogger("ledgergate.session")

# Route identifiers used as rate-limit keys. Values match Settings.route_limits().
ROUTE_LOGIN_CREDENTIAL = "login/credential"
ROUTE_WALLET_CHALLENGE = "login/wallet/challenge"
ROUTE_WALLET_VERIFY = "login/wallet/verify"
ROUTE_REGISTER_WALLET = "register/wallet"
ROUTE_REGISTER_CREDENTIAL = "register/credential"
ROUTE_TWO_FACTOR_VERIFY = "twofactor/verify"
ROUTE_TWO_FACTOR_RESEND = "twofactor/resend"
ROUTE_TWO_FACTOR_SETUP = "twofactor/setup"
ROUTE_TWO_FACTOR_ENABLE = "twofactor/enable"
ROUTE_TWO_FACTOR_DISABLE = "twofactor/disable"
ROUTE_TOKEN_REFRESH = "token/refresh"
ROUTE_LOGOUT = "logout"
ROUTE_ME = "me"
ROUTE_PASSWORD_CHANGE = "password/change"
ROUTE_PASSWORD_FORGOT = "password/forgot"
ROUTE_PASSWORD_RESET = "password/reset"


class SessionOrchestrator:
    def __init__(
        self,
        *,
        limiter: RateLimiter,
        accounts: AccountStore,
        credentials: CredentialStore,
        wallet: WalletChallengeService,
        two_factor: TwoFactorController,
        tokens: TokenService,
        notifier: Notifier,
        password_resets: PasswordResetService,
        two_factor_token_ttl_seconds: int = 600,
        clock: Clock = utcnow,
    ) -> None:
        self.limiter = limiter
        self.accounts = accounts
        self.credentials = credentials
        self.wallet = wallet
        self.two_factor = two_factor
        self.tokens = tokens
        self.notifier = notifier
        self.password_resets = password_resets
        self.two_factor_token_ttl = timedelta(seconds=two_factor_token_ttl_seconds)
        self.clock = clock

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _admit(self, route_id: str, identity: str) -> None:
        decision = self.limiter.admit(route_id, identity)
        if not decision.allowed:
            raise RateLimited(decision.reset_at, remaining=0)

    def _active_account(self, account_id: int) -> Account:
        account = self.accounts.get_by_id(account_id)
        if account is None or not account.is_active:
            raise AccountNotFound()
        return account

    def _authorize(self, route_id: str, access_token: str | None, identity: str) -> Account:
        """Admit, then resolve the bearer's active account."""
        self._admit(route_id, identity)
        if not access_token:
            raise TokenInvalid("Authentication required.")
        return self._active_account(self.tokens.verify(access_token).account_id)

    def _notify(self, account_id: int, kind: str, title: str, message: str, data: dict | None = None) -> None:
        try:
            self.notifier.create_notification(account_id, kind, title, message, data)
        except Exception:
            # The triggering flow has already committed its state
            logger.exception("Notification %s for account=%s failed", kind, account_id)

    def _start_login_challenge(self, account: Account) -> tuple[TwoFactorChallenge, bool]:
        try:
            return self.two_factor.start_challenge(account), True
        except OtpDeliveryFailed as exc:
            return exc.challenge, False

    def _authenticated(self, account: Account) -> AuthResult:
        pair = self.tokens.issue(account)
        self.accounts.update_last_login(account.id)
        return AuthResult(status=AuthStatus.authenticated, account=account, tokens=pair)

    def _park_or_issue(self, account: Account) -> AuthResult:
        """Issue tokens, or park the login behind a fresh 2FA challenge."""
        if not account.two_factor.enabled:
            return self._authenticated(account)

        challenge, delivered = self._start_login_challenge(account)
        pending_token = self.tokens.issue_two_factor_token(account.id, self.clock() + self.two_factor_token_ttl)
        logger.info("Login for account=%s parked pending two-factor (delivered=%s)", account.id, delivered)
        return AuthResult(
            status=AuthStatus.pending_two_factor,
            account=account,
            two_factor_token=pending_token,
            two_factor_expires_at=challenge.expires_at,
            delivered=delivered,
        )

    # ------------------------------------------------------------------
    # Credential flows
    # ------------------------------------------------------------------

    def login_with_credentials(self, email: str, password: str, identity: str) -> AuthResult:
        self._admit(ROUTE_LOGIN_CREDENTIAL, identity)
        account = self.credentials.verify(email, password)
        return self._park_or_issue(account)

    def register_credentials(
        self, email: str, password: str, first_name: str, last_name: str, identity: str
    ) -> AuthResult:
        self._admit(ROUTE_REGISTER_CREDENTIAL, identity)
        email = normalize_email(email)
        if self.accounts.get_by_email(email) is not None:
            raise EmailAlreadyRegistered()
        try:
            account_id = self.accounts.create_account(
                Account(
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                    hashed_password=hash_password(password),
                    role=Role.customer,
                )
            )
        except IntegrityError as exc:
            raise EmailAlreadyRegistered() from exc
        logger.info("Registered account id=%s via credentials", account_id)
        return self._authenticated(self._active_account(account_id))

    # ------------------------------------------------------------------
    # Wallet flows
    # ------------------------------------------------------------------

    def request_wallet_challenge(self, address: str, identity: str) -> WalletChallenge:
        self._admit(ROUTE_WALLET_CHALLENGE, identity)
        return self.wallet.issue_challenge(address)

    def login_with_wallet(self, address: str, signature: str, identity: str) -> AuthResult:
        self._admit(ROUTE_WALLET_VERIFY, identity)
        verification = self.wallet.verify_signature(address, signature)
        if verification.account is None:
            return AuthResult(status=AuthStatus.needs_registration, address=verification.address)

        account = verification.account
        result = self._park_or_issue(account)
        self._notify(
            account.id,
            WALLET_LOGIN,
            "New wallet sign-in",
            f"Your account was accessed with wallet {verification.address}.",
            {"address": verification.address},
        )
        return result

    def register_wallet(
        self,
        address: str,
        signature: str,
        email: str,
        first_name: str,
        last_name: str,
        identity: str,
    ) -> AuthResult:
        """Create an account for a freshly verified, unlinked wallet and sign it in."""
        self._admit(ROUTE_REGISTER_WALLET, identity)
        checksummed = normalize_address(address)
        email = normalize_email(email)
        # Conflicts are checked before the grant is redeemed so a typo in the
        # email does not burn the caller's signature.
        if self.accounts.get_by_wallet(checksummed) is not None:
            raise WalletAlreadyRegistered()
        if self.accounts.get_by_email(email) is not None:
            raise EmailAlreadyRegistered()

        self.wallet.claim_registration(checksummed, signature)
        try:
            account_id = self.accounts.create_account(
                Account(
                    email=email,
                    first_name=first_name,
                    last_name=last_name,
                    wallet_address=checksummed,
                    role=Role.customer,
                )
            )
        except IntegrityError as exc:
            if self.accounts.get_by_wallet(checksummed) is not None:
                raise WalletAlreadyRegistered() from exc
            raise EmailAlreadyRegistered() from exc

        account = self._active_account(account_id)
        logger.info("Registered account id=%s for wallet %s", account_id, checksummed)
        result = self._park_or_issue(account)
        self._notify(
            account.id,
            WALLET_LOGIN,
            "Wallet registered",
            f"Your account was created with wallet {checksummed}.",
            {"address": checksummed},
        )
        return result

    # ------------------------------------------------------------------
    # Two-factor completion and resend
    # ------------------------------------------------------------------

    def complete_two_factor(self, two_factor_token: str, code: str, identity: str) -> AuthResult:
        self._admit(ROUTE_TWO_FACTOR_VERIFY, identity)
        account = self._active_account(self.tokens.read_two_factor_token(two_factor_token))
        challenge = self.two_factor.latest_for(account.id, ChallengePurpose.login)
        if challenge is None:
            raise NoChallenge()
        self.two_factor.verify(challenge.id, code)
        logger.info("Two-factor verified for account=%s", account.id)
        return self._authenticated(account)

    def resend_two_factor(self, two_factor_token: str, identity: str) -> AuthResult:
        self._admit(ROUTE_TWO_FACTOR_RESEND, identity)
        account = self._active_account(self.tokens.read_two_factor_token(two_factor_token))
        try:
            challenge = self.two_factor.resend(account)
            delivered = True
        except OtpDeliveryFailed as exc:
            challenge, delivered = exc.challenge, False
        return AuthResult(
            status=AuthStatus.pending_two_factor,
            account=account,
            two_factor_token=two_factor_token,
            two_factor_expires_at=challenge.expires_at,
            delivered=delivered,
        )

    # ------------------------------------------------------------------
    # Two-factor enrolment (authenticated callers)
    # ------------------------------------------------------------------

    def start_two_factor_setup(
        self, access_token: str | None, channel: TwoFactorChannel, destination: str, identity: str
    ) -> TwoFactorSetup:
        account = self._authorize(ROUTE_TWO_FACTOR_SETUP, access_token, identity)
        try:
            challenge = self.two_factor.start_challenge(
                account, purpose=ChallengePurpose.setup, channel=channel, destination=destination
            )
            delivered = True
        except OtpDeliveryFailed as exc:
            challenge, delivered = exc.challenge, False
        setup_token = self.tokens.issue_setup_token(account.id, channel, destination, challenge.expires_at)
        return TwoFactorSetup(setup_token=setup_token, expires_at=challenge.expires_at, delivered=delivered)

    def enable_two_factor(self, access_token: str | None, setup_token: str, code: str, identity: str) -> Account:
        account = self._authorize(ROUTE_TWO_FACTOR_ENABLE, access_token, identity)
        channel, destination = self.tokens.read_setup_token(setup_token, account.id)
        challenge = self.two_factor.latest_for(account.id, ChallengePurpose.setup)
        if challenge is None or challenge.destination != destination or challenge.channel is not channel:
            raise NoChallenge()
        self.two_factor.verify(challenge.id, code)

        self.accounts.set_two_factor(
            account.id, TwoFactorConfig(enabled=True, channel=channel, destination=destination)
        )
        logger.info("Two-factor enabled for account=%s via %s", account.id, channel.value)
        self._notify(
            account.id,
            TWO_FACTOR_ENABLED,
            "Two-factor authentication enabled",
            f"Sign-in codes will be sent via {channel.value}.",
        )
        return self._active_account(account.id)

    def disable_two_factor(self, access_token: str | None, password: str | None, identity: str) -> Account:
        """Turn 2FA off. Password accounts must re-confirm their password."""
        account = self._authorize(ROUTE_TWO_FACTOR_DISABLE, access_token, identity)
        if not account.two_factor.enabled:
            raise TwoFactorNotEnabled()
        if account.hashed_password is not None:
            if not password or not verify_password(password, account.hashed_password):
                raise InvalidCredentials("Password confirmation failed.")

        self.accounts.set_two_factor(
            account.id,
            TwoFactorConfig(
                enabled=False,
                channel=account.two_factor.channel,
                destination=account.two_factor.destination,
            ),
        )
        self.two_factor.invalidate(account.id, ChallengePurpose.login)
        logger.info("Two-factor disabled for account=%s", account.id)
        self._notify(
            account.id,
            TWO_FACTOR_DISABLED,
            "Two-factor authentication disabled",
            "Sign-in no longer requires a verification code.",
        )
        return self._active_account(account.id)

    # ------------------------------------------------------------------
    # Refresh / logout
    # ------------------------------------------------------------------

    def refresh_tokens(self, refresh_token: str, identity: str) -> AuthResult:
        self._admit(ROUTE_TOKEN_REFRESH, identity)
        pair, account = self.tokens.refresh(refresh_token)
        return AuthResult(status=AuthStatus.authenticated, account=account, tokens=pair)

    def logout(self, refresh_token: str, identity: str) -> bool:
        """Revoke the presented token's whole family. Unknown tokens succeed silently."""
        self._admit(ROUTE_LOGOUT, identity)
        record = self.tokens.family_of(refresh_token)
        if record is not None:
            self.tokens.revoke(family_id=record.family_id, reason=RevokeReason.logout)
        return True

    # ------------------------------------------------------------------
    # Current account and passwords
    # ------------------------------------------------------------------

    def current_account(self, access_token: str | None, identity: str) -> Account:
        return self._authorize(ROUTE_ME, access_token, identity)

    def change_password(
        self, access_token: str | None, current_password: str, new_password: str, identity: str
    ) -> AuthResult:
        """Replace the password and revoke every refresh token of the account.

        The caller gets a fresh pair in a new family so this session survives;
        every other session has to sign in again.
        """
        account = self._authorize(ROUTE_PASSWORD_CHANGE, access_token, identity)
        if account.hashed_password is None or not verify_password(current_password, account.hashed_password):
            raise InvalidCredentials("Current password is incorrect.")
        self.accounts.update_account(account.id, hashed_password=hash_password(new_password))
        revoked = self.tokens.revoke(account_id=account.id, reason=RevokeReason.account)
        logger.info("Password changed for account=%s; revoked %d refresh token(s)", account.id, revoked)

        account = self._active_account(account.id)
        pair = self.tokens.issue(account)
        self._notify(
            account.id,
            PASSWORD_CHANGED,
            "Password changed",
            "Your password was changed. Other sessions have been signed out.",
        )
        return AuthResult(status=AuthStatus.authenticated, account=account, tokens=pair)

    def request_password_reset(self, email: str, identity: str) -> None:
        """Send a reset code if the email belongs to a password account. Silent either way."""
        self._admit(ROUTE_PASSWORD_FORGOT, identity)
        self.password_resets.request_reset(email)

    def reset_password(self, code: str, new_password: str, identity: str) -> Account:
        self._admit(ROUTE_PASSWORD_RESET, identity)
        account = self.password_resets.confirm_reset(code, new_password)
        revoked = self.tokens.revoke(account_id=account.id, reason=RevokeReason.account)
        logger.info("Password reset for account=%s; revoked %d refresh token(s)", account.id, revoked)
        self._notify(
            account.id,
            PASSWORD_CHANGED,
            "Password reset",
            "Your password was reset. All sessions have been signed out.",
        )
        return account
