"""
API request and response models for LedgerGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field names are snake_case in Python and camelCase on the wire. Requests accept
either spelling; responses are dumped with by_alias=True.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.credentials import MAX_PASSWORD_BYTES, password_too_long
from auth.models import AuthStatus, Role, TwoFactorChannel

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    # Passwords are not stripped; str_strip_whitespace stays off here.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _Response(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def _password_fits_bcrypt(value: str) -> str:
    if password_too_long(value):
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes when UTF-8 encoded")
    return value


# max_length counts characters; bcrypt's limit is in bytes
NewPassword = Annotated[str, AfterValidator(_password_fits_bcrypt)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CredentialLoginRequest(_Request):
    """Request body for POST /api/v1/auth/login/credential."""

    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=128)


class WalletChallengeRequest(_Request):
    address: str = Field(min_length=1, max_length=64)


class WalletVerifyRequest(_Request):
    address: str = Field(min_length=1, max_length=64)
    signature: str = Field(min_length=1, max_length=200)


class WalletRegisterRequest(_Request):
    """Request body for POST /api/v1/auth/register/wallet.

    address and signature must be the pair that just returned
    needs_registration from /login/wallet/verify.
    """

    address: str = Field(min_length=1, max_length=64)
    signature: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=254)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class CredentialRegisterRequest(_Request):
    email: str = Field(min_length=3, max_length=254)
    password: NewPassword = Field(min_length=8, max_length=72)
    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)


class TwoFactorVerifyRequest(_Request):
    two_factor_token: str = Field(min_length=1)
    code: str = Field(min_length=1, max_length=12)


class TwoFactorResendRequest(_Request):
    two_factor_token: str = Field(min_length=1)


class TwoFactorSetupRequest(_Request):
    channel: Optional[TwoFactorChannel] = None  # defaults to the configured OTP_CHANNEL
    destination: str = Field(pattern=r"^\+?[1-9]\d{6,14}$")


class TwoFactorEnableRequest(_Request):
    setup_token: str = Field(min_length=1)
    code: str = Field(min_length=1, max_length=12)


class TwoFactorDisableRequest(_Request):
    password: Optional[str] = Field(default=None, max_length=128)


class RefreshRequest(_Request):
    refresh_token: str = Field(min_length=1, max_length=512)


class PasswordChangeRequest(_Request):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: NewPassword = Field(min_length=8, max_length=72)


class PasswordForgotRequest(_Request):
    email: str = Field(min_length=3, max_length=254)


class PasswordResetRequest(_Request):
    """Request body for POST /api/v1/auth/password/reset."""

    code: str = Field(min_length=1, max_length=128)
    new_password: NewPassword = Field(min_length=8, max_length=72)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPairResponse(_Response):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    access_expires_at: datetime
    refresh_expires_at: datetime
    expires_in: int


class AccountResponse(_Response):
    account_id: int
    email: str
    role: Role
    first_name: str
    last_name: str
    wallet_address: Optional[str] = None
    two_factor_enabled: bool


class AuthResponse(_Response):
    """Result of every login-shaped flow.

    status=authenticated carries tokens; status=pending_two_factor carries
    twoFactorToken and twoFactorExpiresAt; status=needs_registration carries
    the checksummed address only.
    """

    status: AuthStatus
    tokens: Optional[TokenPairResponse] = None
    two_factor_token: Optional[str] = None
    two_factor_expires_at: Optional[datetime] = None
    delivered: Optional[bool] = None
    address: Optional[str] = None
    account: Optional[AccountResponse] = None


class WalletChallengeResponse(_Response):
    nonce: str
    message: str
    expires_at: datetime


class ResendResponse(_Response):
    expires_at: datetime
    delivered: bool


class TwoFactorSetupResponse(_Response):
    setup_token: str
    expires_at: datetime
    delivered: bool


class TwoFactorStatusResponse(_Response):
    enabled: bool


class RefreshResponse(_Response):
    tokens: TokenPairResponse


class LogoutResponse(_Response):
    success: bool = True


class MessageResponse(_Response):
    message: str


class MeResponse(_Response):
    """Response for GET /api/v1/auth/me."""

    account_id: int
    email: str
    role: Role
    wallet_address: Optional[str] = None
    two_factor_enabled: bool


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class RateLimitedResponse(ErrorResponse):
    """429 envelope. remaining is always 0; resetAt is when the window reopens."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    remaining: int = 0
    reset_at: datetime = Field(alias="resetAt")


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
