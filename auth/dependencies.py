"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as "Authorization: Bearer <token>" only. Verification is
delegated to TokenService.verify(), which is pure (signature, type, expiry),
so downstream services can authorize a request without touching the database.

bearer_token() only extracts the raw token; bearer routes hand it to
SessionOrchestrator, which rate limits the route before verifying it.
get_current_claims() raises TokenInvalid/TokenExpired on failure.
require_role(...) builds a dependency that raises PermissionDenied when the
caller's role is not in the allowed set.

Failures are AuthError subclasses; api/main.py maps them to the error envelope.

Layer rule: auth/dependencies.py may import from fastapi (for Request) because
this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.errors import PermissionDenied, TokenInvalid
from auth.models import AccessClaims, Role
from auth.tokens import TokenService


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_claims(request: Request) -> AccessClaims:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessClaims = Depends(get_current_claims)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise TokenInvalid("Authentication required.")
    tokens: TokenService = request.app.state.token_service
    return tokens.verify(token)


def require_role(*roles: Role) -> Callable[[Request], AccessClaims]:
    """Build a dependency admitting only the given roles.

    Roles are coerced through the Role enum when the dependency is declared, so
    a misspelled role fails at import time instead of silently denying.

        @router.get("/admin", dependencies=[Depends(require_role(Role.admin))])
    """
    if not roles:
        raise ValueError("require_role() needs at least one role")
    allowed = frozenset(Role(r) for r in roles)

    def dependency(request: Request) -> AccessClaims:
        claims = get_current_claims(request)
        if claims.role not in allowed:
            raise PermissionDenied()
        return claims

    return dependency
