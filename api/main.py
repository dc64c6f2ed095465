"""
api/main.py -- FastAPI application entry point for LedgerGate.

Exposes the authentication core over HTTP: credential and wallet login,
two-factor verification and enrolment, refresh rotation and logout.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins

Rate limiting is not a middleware here. SessionOrchestrator admits each flow
against the shared RateLimiter on app.state before doing any other work.

Lifespan handles startup (engine, stores, services, purge task) and shutdown
(cancel purge task, dispose engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import build_limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, RateLimitedResponse
from api.routes.v1.auth import router as auth_router
from auth.credentials import CredentialStore
from auth.delivery import EmailResetSender, OtpSender, OutboxSender, ResetCodeSender, WhatsAppOtpSender
from auth.errors import AuthError, RateLimited, ResendTooSoon
from auth.models import TwoFactorChannel
from auth.notifications import LoggingNotifier, Notifier
from auth.password_reset import PasswordResetService
from auth.session import SessionOrchestrator
from auth.store import (
    AccountStore,
    PasswordResetStore,
    SqlTokenStore,
    TwoFactorChallengeStore,
    WalletChallengeStore,
    create_store_engine,
)
from auth.tokens import TokenService
from auth.two_factor import TwoFactorController
from auth.wallet import WalletChallengeService
from core.clock import Clock, utcnow
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ledgergate.api")

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def _default_sender(settings: Settings) -> OtpSender:
    if settings.whatsapp_access_token and settings.whatsapp_phone_number_id:
        return WhatsAppOtpSender(
            settings.whatsapp_api_url,
            settings.whatsapp_phone_number_id,
            settings.whatsapp_access_token,
        )
    logger.warning("WhatsApp credentials not configured -- OTP codes are kept in the in-memory outbox")
    return OutboxSender()


def _default_reset_sender(settings: Settings) -> ResetCodeSender:
    if settings.email_api_key:
        return EmailResetSender(
            settings.email_api_url,
            settings.email_api_key,
            settings.email_from_address,
            settings.password_reset_url,
        )
    logger.warning("Email API key not configured -- password reset codes are kept in the in-memory outbox")
    return OutboxSender()


def install_services(
    app: FastAPI,
    settings: Settings,
    *,
    engine: Engine | None = None,
    sender: OtpSender | None = None,
    reset_sender: ResetCodeSender | None = None,
    notifier: Notifier | None = None,
    clock: Clock = utcnow,
) -> None:
    """Build every store and service and publish them on app.state.

    Tests call this directly with a shared-memory engine, outbox senders and a
    frozen clock; the lifespan calls it with the configured defaults.
    """
    engine = engine if engine is not None else create_store_engine(settings.database_url)
    accounts = AccountStore(engine)
    wallet_challenges = WalletChallengeStore(engine)
    two_factor_challenges = TwoFactorChallengeStore(engine)
    password_reset_store = PasswordResetStore(engine)
    token_store = SqlTokenStore(engine)

    tokens = TokenService(
        token_store,
        accounts,
        secret_key=settings.secret_key,
        access_ttl_seconds=settings.access_token_expire_seconds,
        refresh_ttl_days=settings.refresh_token_expire_days,
        clock=clock,
    )
    two_factor = TwoFactorController(
        two_factor_challenges,
        sender if sender is not None else _default_sender(settings),
        secret_key=settings.secret_key,
        code_length=settings.otp_length,
        ttl_seconds=settings.otp_ttl_seconds,
        max_attempts=settings.otp_max_attempts,
        resend_cooldown_seconds=settings.otp_resend_cooldown_seconds,
        delivery_timeout_seconds=settings.otp_delivery_timeout_seconds,
        clock=clock,
    )
    wallet = WalletChallengeService(
        wallet_challenges,
        accounts,
        ttl_seconds=settings.wallet_challenge_ttl_seconds,
        domain=settings.wallet_message_domain,
        clock=clock,
    )
    password_resets = PasswordResetService(
        password_reset_store,
        accounts,
        reset_sender if reset_sender is not None else _default_reset_sender(settings),
        secret_key=settings.secret_key,
        ttl_seconds=settings.password_reset_ttl_seconds,
        delivery_timeout_seconds=settings.otp_delivery_timeout_seconds,
        clock=clock,
    )
    limiter = build_limiter(settings)

    app.state.engine = engine
    app.state.clock = clock
    app.state.account_store = accounts
    app.state.wallet_challenge_store = wallet_challenges
    app.state.two_factor_challenge_store = two_factor_challenges
    app.state.password_reset_store = password_reset_store
    app.state.token_store = token_store
    app.state.token_service = tokens
    app.state.limiter = limiter
    app.state.default_otp_channel = TwoFactorChannel(settings.otp_channel)
    app.state.session = SessionOrchestrator(
        limiter=limiter,
        accounts=accounts,
        credentials=CredentialStore(accounts),
        wallet=wallet,
        two_factor=two_factor,
        tokens=tokens,
        notifier=notifier if notifier is not None else LoggingNotifier(),
        password_resets=password_resets,
        two_factor_token_ttl_seconds=settings.two_factor_token_expire_seconds,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


def purge_expired(app: FastAPI) -> dict[str, int]:
    """Delete every expired auth artifact. Returns the row count removed per table."""
    now = app.state.clock()
    removed = {
        "wallet_challenges": app.state.wallet_challenge_store.purge_expired(now),
        "two_factor_challenges": app.state.two_factor_challenge_store.purge_expired(now),
        "password_resets": app.state.password_reset_store.purge_expired(now),
        "refresh_tokens": app.state.token_store.purge_expired(now),
    }
    if any(removed.values()):
        logger.info("Purged expired auth artifacts: %s", removed)
    return removed


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired auth artifacts every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        purge_expired(app)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Settings are resolved first so a missing SECRET_KEY fails startup
    before any store is opened.
    """
    settings = get_settings()
    logger.info("%s API starting up", settings.app_name)
    install_services(app, settings)
    logger.info("Auth services initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.engine.dispose()
    logger.info("%s API shutdown complete", settings.app_name)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="LedgerGate API",
    description="Credential, wallet and two-factor authentication with rotating refresh tokens.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() calls are applied outermost-first from the caller's
# perspective. Register in the order you want the request to encounter them:
# TrustedHost -> CORS.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time before and after call_next gives the latency.
# Paths only: bodies carry passwords and tokens and are never logged.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _retry_after(now, until) -> str:
    seconds = (until - now).total_seconds()
    return str(max(1, math.ceil(seconds)))


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth core's error taxonomy onto the error envelope.

    RateLimited carries remaining=0 and resetAt next to the envelope, plus a
    Retry-After header. The limiter counts in wall-clock time, so its
    Retry-After uses the real clock rather than the injected one. ResendTooSoon sets Retry-After to the cooldown end.
    """
    error = ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail)
    headers = {"Cache-Control": "no-store"}

    if isinstance(exc, RateLimited):
        headers["Retry-After"] = _retry_after(utcnow(), exc.reset_at)
        content = RateLimitedResponse(error=error, remaining=exc.remaining, reset_at=exc.reset_at).model_dump(
            mode="json", by_alias=True
        )
        return JSONResponse(status_code=exc.status_code, content=content, headers=headers)

    if isinstance(exc, ResendTooSoon):
        headers["Retry-After"] = _retry_after(request.app.state.clock(), exc.available_at)

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=error).model_dump(),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str([{"loc": e.get("loc"), "msg": e.get("msg")} for e in exc.errors()]),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, current version and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
