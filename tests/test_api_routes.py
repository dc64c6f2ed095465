"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> request model
validation -> SessionOrchestrator -> stores -> response model serialization
and the error envelope. Unit testing individual route functions would miss
dependency injection, exception handlers, and camelCase serialization.

Coverage:
  - Auth failures: 401 on protected routes without or with a bad token
  - Credential login, /me, refresh, logout happy paths
  - 2FA login over HTTP using the in-memory outbox
  - Wallet challenge -> verify -> register over HTTP
  - 429 envelope with remaining/resetAt and Retry-After; bearer routes are
    limited before the token is looked at
  - Password change, forgot and reset over HTTP
  - Validation errors use the standard envelope
  - Cache-Control: no-store on token-bearing responses

Fixtures used (from conftest.py):
  - api_client: ApiHarness -- TestClient with a patched lifespan, frozen clock
    and OutboxSender. Each test uses its own email addresses because the
    database is shared across the module.
"""

from __future__ import annotations

from auth.rate_limit import RateLimiter
from tests.helpers import PASSWORD, PHONE, new_wallet, sign


class TestApiAuthFailure:
    """Unauthenticated requests to protected routes must return 401."""

    def test_get_me_unauthenticated(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_invalid"

    def test_get_me_with_garbage_token(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/auth/me", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_twofactor_setup_unauthenticated(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/twofactor/setup", json={"channel": "whatsapp", "destination": "+15550001111"}
        )
        assert resp.status_code == 401

    def test_bad_credentials_envelope(self, api_client) -> None:
        api_client.create_account("bad-pw@example.com")
        resp = api_client.client.post(
            "/api/v1/auth/login/credential", json={"email": "bad-pw@example.com", "password": "wrong"}
        )
        assert resp.status_code == 401
        assert resp.json() == {
            "error": {"code": "invalid_credentials", "message": "Invalid email or password.", "detail": None}
        }
        assert resp.headers["Cache-Control"] == "no-store"


class TestCredentialRoutes:
    def test_login_and_me(self, api_client) -> None:
        account = api_client.create_account("me@example.com")
        body = api_client.login("me@example.com")

        assert body["status"] == "authenticated"
        assert body["tokens"]["tokenType"] == "bearer"
        assert body["tokens"]["expiresIn"] == 900
        assert body["account"]["accountId"] == account.id

        headers = {"Authorization": f"Bearer {body['tokens']['accessToken']}"}
        me = api_client.client.get("/api/v1/auth/me", headers=headers)
        assert me.status_code == 200
        assert me.json() == {
            "accountId": account.id,
            "email": "me@example.com",
            "role": "customer",
            "walletAddress": None,
            "twoFactorEnabled": False,
        }

    def test_login_response_is_not_cached(self, api_client) -> None:
        api_client.create_account("nocache@example.com")
        resp = api_client.client.post(
            "/api/v1/auth/login/credential", json={"email": "nocache@example.com", "password": PASSWORD}
        )
        assert resp.headers["Cache-Control"] == "no-store"

    def test_register_credential(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/register/credential",
            json={"email": "fresh@example.com", "password": "long-enough-pw", "firstName": "F", "lastName": "L"},
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["account"]["email"] == "fresh@example.com"

        dup = api_client.client.post(
            "/api/v1/auth/register/credential",
            json={"email": "fresh@example.com", "password": "long-enough-pw"},
        )
        assert dup.status_code == 409
        assert dup.json()["error"]["code"] == "email_exists"

    def test_refresh_and_replay(self, api_client) -> None:
        api_client.create_account("rotate@example.com")
        t1 = api_client.login("rotate@example.com")["tokens"]["refreshToken"]

        resp = api_client.client.post("/api/v1/auth/token/refresh", json={"refreshToken": t1})
        assert resp.status_code == 200
        t2 = resp.json()["tokens"]["refreshToken"]
        assert t2 != t1

        replay = api_client.client.post("/api/v1/auth/token/refresh", json={"refreshToken": t1})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_invalid"
        assert api_client.client.post("/api/v1/auth/token/refresh", json={"refreshToken": t2}).status_code == 401

    def test_logout(self, api_client) -> None:
        api_client.create_account("bye@example.com")
        token = api_client.login("bye@example.com")["tokens"]["refreshToken"]

        resp = api_client.client.post("/api/v1/auth/logout", json={"refreshToken": token})
        assert resp.status_code == 200
        assert resp.json() == {"success": True}

        after = api_client.client.post("/api/v1/auth/token/refresh", json={"refreshToken": token})
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "token_revoked"

    def test_validation_error_envelope(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/login/credential", json={"email": "x@example.com"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_register_multibyte_password_over_72_bytes(self, api_client) -> None:
        # 40 characters, 80 bytes
        resp = api_client.client.post(
            "/api/v1/auth/register/credential",
            json={"email": "accent@example.com", "password": "é" * 40},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert api_client.state.account_store.get_by_email("accent@example.com") is None


class TestTwoFactorRoutes:
    def test_two_factor_login(self, api_client) -> None:
        api_client.create_account("otp@example.com", two_factor=True)
        pending = api_client.login("otp@example.com")

        assert pending["status"] == "pending_two_factor"
        assert pending["tokens"] is None
        assert pending["account"] is None
        assert pending["delivered"] is True

        code = api_client.sender.last_code(PHONE)
        resp = api_client.client.post(
            "/api/v1/auth/twofactor/verify",
            json={"twoFactorToken": pending["twoFactorToken"], "code": code},
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "authenticated"
        assert resp.json()["tokens"]["accessToken"]

    def test_wrong_code_reports_attempts(self, api_client) -> None:
        api_client.create_account("otp-wrong@example.com", two_factor=True)
        pending = api_client.login("otp-wrong@example.com")
        code = api_client.sender.last_code(PHONE)
        wrong = "000000" if code != "000000" else "111111"

        resp = api_client.client.post(
            "/api/v1/auth/twofactor/verify",
            json={"twoFactorToken": pending["twoFactorToken"], "code": wrong},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_code"
        assert resp.json()["error"]["detail"] == "4 attempt(s) remaining."

    def test_resend_too_soon(self, api_client) -> None:
        api_client.create_account("otp-resend@example.com", two_factor=True)
        pending = api_client.login("otp-resend@example.com")

        resp = api_client.client.post(
            "/api/v1/auth/twofactor/resend", json={"twoFactorToken": pending["twoFactorToken"]}
        )
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "resend_too_soon"
        assert resp.headers["Retry-After"] == "30"

    def test_setup_and_enable(self, api_client) -> None:
        api_client.create_account("enrol@example.com")
        headers = api_client.bearer("enrol@example.com")

        setup = api_client.client.post(
            "/api/v1/auth/twofactor/setup",
            json={"channel": "whatsapp", "destination": "+15557654321"},
            headers=headers,
        )
        assert setup.status_code == 200, setup.text
        code = api_client.sender.last_code("+15557654321")

        enable = api_client.client.post(
            "/api/v1/auth/twofactor/enable",
            json={"setupToken": setup.json()["setupToken"], "code": code},
            headers=headers,
        )
        assert enable.status_code == 200
        assert enable.json() == {"enabled": True}

        me = api_client.client.get("/api/v1/auth/me", headers=headers)
        assert me.json()["twoFactorEnabled"] is True

        disable = api_client.client.post(
            "/api/v1/auth/twofactor/disable", json={"password": PASSWORD}, headers=headers
        )
        assert disable.json() == {"enabled": False}


class TestWalletRoutes:
    def test_challenge_verify_register(self, api_client) -> None:
        wallet = new_wallet()
        challenge = api_client.client.post(
            "/api/v1/auth/login/wallet/challenge", json={"address": wallet.address.lower()}
        )
        assert challenge.status_code == 200
        payload = challenge.json()
        assert payload["nonce"] in payload["message"]
        assert "expiresAt" in payload

        signature = sign(wallet, payload["message"])
        verify = api_client.client.post(
            "/api/v1/auth/login/wallet/verify", json={"address": wallet.address, "signature": signature}
        )
        assert verify.status_code == 200
        assert verify.json()["status"] == "needs_registration"
        assert verify.json()["address"] == wallet.address

        register = api_client.client.post(
            "/api/v1/auth/register/wallet",
            json={
                "address": wallet.address,
                "signature": signature,
                "email": "wallet-user@example.com",
                "firstName": "W",
                "lastName": "U",
            },
        )
        assert register.status_code == 201, register.text
        body = register.json()
        assert body["status"] == "authenticated"
        assert body["account"]["walletAddress"] == wallet.address

    def test_replayed_signature_rejected(self, api_client) -> None:
        wallet = new_wallet()
        message = api_client.client.post(
            "/api/v1/auth/login/wallet/challenge", json={"address": wallet.address}
        ).json()["message"]
        body = {"address": wallet.address, "signature": sign(wallet, message)}

        assert api_client.client.post("/api/v1/auth/login/wallet/verify", json=body).status_code == 200
        replay = api_client.client.post("/api/v1/auth/login/wallet/verify", json=body)
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "no_challenge"

    def test_invalid_address(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/login/wallet/challenge", json={"address": "0x1234"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_address"


class TestRateLimitedResponse:
    def test_429_envelope(self, api_client) -> None:
        session = api_client.state.session
        original = session.limiter
        session.limiter = RateLimiter({"logout": "1/minute"})
        try:
            first = api_client.client.post("/api/v1/auth/logout", json={"refreshToken": "x"})
            assert first.status_code == 200
            resp = api_client.client.post("/api/v1/auth/logout", json={"refreshToken": "x"})
        finally:
            session.limiter = original

        assert resp.status_code == 429
        body = resp.json()
        assert body["error"]["code"] == "rate_limited"
        assert body["remaining"] == 0
        assert "resetAt" in body
        assert 1 <= int(resp.headers["Retry-After"]) <= 60

    def test_bearer_route_limited_before_token_check(self, api_client) -> None:
        session = api_client.state.session
        original = session.limiter
        session.limiter = RateLimiter({"twofactor/setup": "1/minute"})
        headers = {"Authorization": "Bearer not-a-jwt"}
        body = {"channel": "whatsapp", "destination": "+15550002222"}
        try:
            codes = [
                api_client.client.post("/api/v1/auth/twofactor/setup", json=body, headers=headers).status_code
                for _ in range(3)
            ]
        finally:
            session.limiter = original
        assert codes == [401, 429, 429]

    def test_me_is_limited(self, api_client) -> None:
        api_client.create_account("me-limit@example.com")
        headers = api_client.bearer("me-limit@example.com")
        session = api_client.state.session
        original = session.limiter
        session.limiter = RateLimiter({"me": "2/minute"})
        try:
            codes = [api_client.client.get("/api/v1/auth/me", headers=headers).status_code for _ in range(3)]
        finally:
            session.limiter = original
        assert codes == [200, 200, 429]


class TestPasswordRoutes:
    def test_change_password_revokes_old_refresh_token(self, api_client) -> None:
        api_client.create_account("change@example.com")
        old = api_client.login("change@example.com")["tokens"]
        headers = {"Authorization": f"Bearer {old['accessToken']}"}

        resp = api_client.client.post(
            "/api/v1/auth/password/change",
            json={"currentPassword": PASSWORD, "newPassword": "changed-password"},
            headers=headers,
        )
        assert resp.status_code == 200, resp.text
        assert resp.headers["Cache-Control"] == "no-store"
        new = resp.json()["tokens"]

        stale = api_client.client.post("/api/v1/auth/token/refresh", json={"refreshToken": old["refreshToken"]})
        assert stale.status_code == 401
        assert stale.json()["error"]["code"] == "token_revoked"
        fresh = api_client.client.post("/api/v1/auth/token/refresh", json={"refreshToken": new["refreshToken"]})
        assert fresh.status_code == 200
        api_client.login("change@example.com", "changed-password")

    def test_change_password_wrong_current(self, api_client) -> None:
        api_client.create_account("change-wrong@example.com")
        resp = api_client.client.post(
            "/api/v1/auth/password/change",
            json={"currentPassword": "wrong", "newPassword": "changed-password"},
            headers=api_client.bearer("change-wrong@example.com"),
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"

    def test_change_password_requires_bearer(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/password/change",
            json={"currentPassword": PASSWORD, "newPassword": "changed-password"},
        )
        assert resp.status_code == 401

    def test_forgot_then_reset(self, api_client) -> None:
        api_client.create_account("forgot@example.com")
        resp = api_client.client.post("/api/v1/auth/password/forgot", json={"email": "forgot@example.com"})
        unknown = api_client.client.post("/api/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert resp.status_code == unknown.status_code == 200
        assert resp.json() == unknown.json()

        code = api_client.sender.last_reset_code("forgot@example.com")
        reset = api_client.client.post(
            "/api/v1/auth/password/reset", json={"code": code, "newPassword": "from-the-email"}
        )
        assert reset.status_code == 200, reset.text
        api_client.login("forgot@example.com", "from-the-email")

        again = api_client.client.post(
            "/api/v1/auth/password/reset", json={"code": code, "newPassword": "one-more-time"}
        )
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "invalid_reset_code"

    def test_reset_rejects_multibyte_password_over_72_bytes(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/password/reset", json={"code": "abc", "newPassword": "é" * 40})
        assert resp.status_code == 422
