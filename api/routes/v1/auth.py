"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login/credential        -- email + password login
  POST /api/v1/auth/login/wallet/challenge  -- issue a one-time signing nonce
  POST /api/v1/auth/login/wallet/verify     -- verify an EIP-191 signature
  POST /api/v1/auth/register/wallet         -- create an account for a verified wallet
  POST /api/v1/auth/register/credential     -- create a password account
  POST /api/v1/auth/twofactor/verify        -- finish a parked login with an OTP
  POST /api/v1/auth/twofactor/resend        -- replace the outstanding OTP
  POST /api/v1/auth/twofactor/setup         -- send an enrolment OTP (requires auth)
  POST /api/v1/auth/twofactor/enable        -- confirm enrolment (requires auth)
  POST /api/v1/auth/twofactor/disable       -- turn 2FA off (requires auth)
  POST /api/v1/auth/token/refresh           -- rotate a refresh token
  POST /api/v1/auth/logout                  -- revoke the refresh token family
  POST /api/v1/auth/password/change         -- change password, sign out other sessions (requires auth)
  POST /api/v1/auth/password/forgot         -- email a password reset code
  POST /api/v1/auth/password/reset          -- set a new password with a reset code
  GET  /api/v1/auth/me                      -- current account info (requires auth)

Security:
  Every flow is rate limited per (route, client address) inside
  SessionOrchestrator, before any other validation. Bearer routes pass the raw
  access token through so an invalid token still counts against the limit.
  Cache-Control: no-store on every response that can carry a token.
  Handlers are sync def so bcrypt and signature recovery run in the worker
  thread pool, not on the event loop.

Handlers only translate between the wire models and SessionOrchestrator.
AuthError raised below is mapped to the error envelope in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import caller_identity
from api.models import (
    AccountResponse,
    AuthResponse,
    CredentialLoginRequest,
    CredentialRegisterRequest,
    LogoutResponse,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordResetRequest,
    RefreshRequest,
    RefreshResponse,
    ResendResponse,
    TokenPairResponse,
    TwoFactorDisableRequest,
    TwoFactorEnableRequest,
    TwoFactorResendRequest,
    TwoFactorSetupRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
    WalletChallengeRequest,
    WalletChallengeResponse,
    WalletRegisterRequest,
    WalletVerifyRequest,
)
from auth.dependencies import bearer_token
from auth.models import Account, AuthResult, TokenPair
from auth.session import SessionOrchestrator

# Auth policy:
# - login/*, register/*, twofactor/verify, twofactor/resend, token/refresh,
#   logout, password/forgot, password/reset: public -- the caller proves
#   identity with the request body
# - twofactor/setup, twofactor/enable, twofactor/disable, password/change, me:
#   bearer access token
router = APIRouter()


def _session(request: Request) -> SessionOrchestrator:
    return request.app.state.session


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _token_pair(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
        expires_in=int((pair.access_expires_at - pair.issued_at).total_seconds()),
    )


def _account(account: Account) -> AccountResponse:
    return AccountResponse(
        account_id=account.id,
        email=account.email,
        role=account.role,
        first_name=account.first_name,
        last_name=account.last_name,
        wallet_address=account.wallet_address,
        two_factor_enabled=account.two_factor.enabled,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        status=result.status,
        tokens=_token_pair(result.tokens) if result.tokens else None,
        two_factor_token=result.two_factor_token,
        two_factor_expires_at=result.two_factor_expires_at,
        delivered=result.delivered,
        address=result.address,
        account=_account(result.account) if result.account and result.tokens else None,
    )


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.post("/auth/login/credential", response_model=AuthResponse)
def login_credential(request: Request, body: CredentialLoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Wrong email and wrong password return the same "invalid_credentials"
    error so account existence is not leaked.
    """
    result = _session(request).login_with_credentials(body.email, body.password, caller_identity(request))
    return _no_store(_auth_response(result).to_json())


@router.post("/auth/login/wallet/challenge", response_model=WalletChallengeResponse)
def wallet_challenge(request: Request, body: WalletChallengeRequest) -> JSONResponse:
    challenge = _session(request).request_wallet_challenge(body.address, caller_identity(request))
    return _no_store(
        WalletChallengeResponse(
            nonce=challenge.nonce,
            message=challenge.message,
            expires_at=challenge.expires_at,
        ).to_json()
    )


@router.post("/auth/login/wallet/verify", response_model=AuthResponse)
def wallet_verify(request: Request, body: WalletVerifyRequest) -> JSONResponse:
    """Verify a signature over the issued challenge message.

    An unlinked wallet returns status=needs_registration; the client then
    calls /register/wallet with the same address and signature.
    """
    result = _session(request).login_with_wallet(body.address, body.signature, caller_identity(request))
    return _no_store(_auth_response(result).to_json())


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/auth/register/wallet", response_model=AuthResponse, status_code=201)
def register_wallet(request: Request, body: WalletRegisterRequest) -> JSONResponse:
    result = _session(request).register_wallet(
        body.address,
        body.signature,
        body.email,
        body.first_name,
        body.last_name,
        caller_identity(request),
    )
    return _no_store(_auth_response(result).to_json(), status_code=201)


@router.post("/auth/register/credential", response_model=AuthResponse, status_code=201)
def register_credential(request: Request, body: CredentialRegisterRequest) -> JSONResponse:
    result = _session(request).register_credentials(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        caller_identity(request),
    )
    return _no_store(_auth_response(result).to_json(), status_code=201)


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


@router.post("/auth/twofactor/verify", response_model=AuthResponse)
def two_factor_verify(request: Request, body: TwoFactorVerifyRequest) -> JSONResponse:
    result = _session(request).complete_two_factor(body.two_factor_token, body.code, caller_identity(request))
    return _no_store(_auth_response(result).to_json())


@router.post("/auth/twofactor/resend", response_model=ResendResponse)
def two_factor_resend(request: Request, body: TwoFactorResendRequest) -> JSONResponse:
    result = _session(request).resend_two_factor(body.two_factor_token, caller_identity(request))
    return _no_store(
        ResendResponse(expires_at=result.two_factor_expires_at, delivered=bool(result.delivered)).to_json()
    )


@router.post("/auth/twofactor/setup", response_model=TwoFactorSetupResponse)
def two_factor_setup(
    request: Request,
    body: TwoFactorSetupRequest,
    access_token: str | None = Depends(bearer_token),
) -> JSONResponse:
    channel = body.channel or request.app.state.default_otp_channel
    setup = _session(request).start_two_factor_setup(
        access_token, channel, body.destination, caller_identity(request)
    )
    return _no_store(
        TwoFactorSetupResponse(
            setup_token=setup.setup_token,
            expires_at=setup.expires_at,
            delivered=setup.delivered,
        ).to_json()
    )


@router.post("/auth/twofactor/enable", response_model=TwoFactorStatusResponse)
def two_factor_enable(
    request: Request,
    body: TwoFactorEnableRequest,
    access_token: str | None = Depends(bearer_token),
) -> JSONResponse:
    account = _session(request).enable_two_factor(
        access_token, body.setup_token, body.code, caller_identity(request)
    )
    return _no_store(TwoFactorStatusResponse(enabled=account.two_factor.enabled).to_json())


@router.post("/auth/twofactor/disable", response_model=TwoFactorStatusResponse)
def two_factor_disable(
    request: Request,
    body: TwoFactorDisableRequest,
    access_token: str | None = Depends(bearer_token),
) -> JSONResponse:
    account = _session(request).disable_two_factor(access_token, body.password, caller_identity(request))
    return _no_store(TwoFactorStatusResponse(enabled=account.two_factor.enabled).to_json())


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@router.post("/auth/token/refresh", response_model=RefreshResponse)
def token_refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Rotate a refresh token. The presented token is dead after this call."""
    result = _session(request).refresh_tokens(body.refresh_token, caller_identity(request))
    return _no_store(RefreshResponse(tokens=_token_pair(result.tokens)).to_json())


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request, body: RefreshRequest) -> JSONResponse:
    """Revoke the refresh token's family. Succeeds for unknown tokens too."""
    success = _session(request).logout(body.refresh_token, caller_identity(request))
    return _no_store(LogoutResponse(success=success).to_json())


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


@router.post("/auth/password/change", response_model=AuthResponse)
def password_change(
    request: Request,
    body: PasswordChangeRequest,
    access_token: str | None = Depends(bearer_token),
) -> JSONResponse:
    """Change the password. Every existing refresh token of the account is revoked
    and a new pair is returned for this session.
    """
    result = _session(request).change_password(
        access_token, body.current_password, body.new_password, caller_identity(request)
    )
    return _no_store(_auth_response(result).to_json())


@router.post("/auth/password/forgot", response_model=MessageResponse)
def password_forgot(request: Request, body: PasswordForgotRequest) -> JSONResponse:
    """Always answers the same way whether or not the email has an account."""
    _session(request).request_password_reset(body.email, caller_identity(request))
    return _no_store(
        MessageResponse(message="If that email has a password account, a reset code has been sent.").to_json()
    )


@router.post("/auth/password/reset", response_model=MessageResponse)
def password_reset(request: Request, body: PasswordResetRequest) -> JSONResponse:
    _session(request).reset_password(body.code, body.new_password, caller_identity(request))
    return _no_store(MessageResponse(message="Password has been reset. Please sign in again.").to_json())


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, access_token: str | None = Depends(bearer_token)) -> MeResponse:
    """Return identity information for the currently authenticated account."""
    account = _session(request).current_account(access_token, caller_identity(request))
    return MeResponse(
        account_id=account.id,
        email=account.email,
        role=account.role,
        wallet_address=account.wallet_address,
        two_factor_enabled=account.two_factor.enabled,
    )
