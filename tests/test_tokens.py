"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - issue(): claims carry the account id and role; refresh stored as a digest
  - verify(): tampered, wrong-type and expired tokens rejected
  - refresh(): rotation keeps the family; replay revokes the whole family
  - Two refreshes racing on one token: the loser is treated as a replay
  - revoke(): logout reason surfaces as TokenRevoked; idempotent
  - two-factor pending-login and setup tokens are never access tokens
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.errors import TokenExpired, TokenInvalid, TokenRevoked
from auth.models import RevokeReason, Role, TwoFactorChannel


class TestIssueAndVerify:
    def test_claims_match_account(self, services) -> None:
        account = services.create_account(role=Role.manager)
        pair = services.tokens.issue(account)
        claims = services.tokens.verify(pair.access_token)

        assert claims.account_id == account.id
        assert claims.role is Role.manager
        assert claims.exp > services.clock()
        assert pair.token_type == "bearer"
        assert pair.refresh_expires_at - pair.issued_at == timedelta(days=7)

    def test_refresh_token_stored_as_digest(self, services) -> None:
        account = services.create_account()
        pair = services.tokens.issue(account)
        assert services.token_store.get(pair.refresh_token) is None
        assert services.tokens.family_of(pair.refresh_token).account_id == account.id

    def test_expired_access_token(self, services) -> None:
        pair = services.tokens.issue(services.create_account())
        services.clock.advance(15 * 60)
        with pytest.raises(TokenExpired):
            services.tokens.verify(pair.access_token)

    def test_tampered_access_token(self, services) -> None:
        pair = services.tokens.issue(services.create_account())
        header, payload, signature = pair.access_token.split(".")
        tampered = ".".join([header, payload, signature[::-1]])
        with pytest.raises(TokenInvalid):
            services.tokens.verify(tampered)

    def test_garbage_token(self, services) -> None:
        with pytest.raises(TokenInvalid):
            services.tokens.verify("not-a-jwt")


class TestRefreshRotation:
    def test_rotation_keeps_family(self, services) -> None:
        account = services.create_account()
        first = services.tokens.issue(account)
        second, refreshed_account = services.tokens.refresh(first.refresh_token)

        assert refreshed_account.id == account.id
        assert second.refresh_token != first.refresh_token
        assert (
            services.tokens.family_of(second.refresh_token).family_id
            == services.tokens.family_of(first.refresh_token).family_id
        )
        old = services.tokens.family_of(first.refresh_token)
        assert old.revoked and old.revoked_reason is RevokeReason.rotated

    def test_replay_revokes_family(self, services) -> None:
        account = services.create_account()
        t1 = services.tokens.issue(account)
        t2, _ = services.tokens.refresh(t1.refresh_token)

        with pytest.raises(TokenInvalid):
            services.tokens.refresh(t1.refresh_token)
        # The legitimate successor is now dead too
        with pytest.raises(TokenInvalid):
            services.tokens.refresh(t2.refresh_token)

    def test_replay_leaves_other_families_alone(self, services) -> None:
        account = services.create_account()
        device_a = services.tokens.issue(account)
        device_b = services.tokens.issue(account)
        services.tokens.refresh(device_a.refresh_token)

        with pytest.raises(TokenInvalid):
            services.tokens.refresh(device_a.refresh_token)
        services.tokens.refresh(device_b.refresh_token)

    def test_expired_refresh_token(self, services) -> None:
        pair = services.tokens.issue(services.create_account())
        services.clock.advance(7 * 24 * 3600)
        with pytest.raises(TokenExpired):
            services.tokens.refresh(pair.refresh_token)

    def test_unknown_refresh_token(self, services) -> None:
        with pytest.raises(TokenInvalid):
            services.tokens.refresh("never-issued")

    def test_disabled_account_cannot_refresh(self, services) -> None:
        account = services.create_account()
        pair = services.tokens.issue(account)
        services.accounts.update_account(account.id, is_active=False)
        with pytest.raises(TokenInvalid):
            services.tokens.refresh(pair.refresh_token)


class TestRevoke:
    def test_logout_revocation_is_token_revoked(self, services) -> None:
        pair = services.tokens.issue(services.create_account())
        family_id = services.tokens.family_of(pair.refresh_token).family_id

        assert services.tokens.revoke(family_id=family_id) == 1
        assert services.tokens.revoke(family_id=family_id) == 0
        with pytest.raises(TokenRevoked):
            services.tokens.refresh(pair.refresh_token)

    def test_revoke_account_covers_all_families(self, services) -> None:
        account = services.create_account()
        services.tokens.issue(account)
        services.tokens.issue(account)
        assert services.tokens.revoke(account_id=account.id, reason=RevokeReason.account) == 2

    def test_revoke_requires_target(self, services) -> None:
        with pytest.raises(ValueError):
            services.tokens.revoke()


class TestAuxiliaryTokens:
    def test_two_factor_token_round_trip(self, services) -> None:
        token = services.tokens.issue_two_factor_token(42, services.clock() + timedelta(minutes=10))
        assert services.tokens.read_two_factor_token(token) == 42

    def test_two_factor_token_is_not_an_access_token(self, services) -> None:
        token = services.tokens.issue_two_factor_token(42, services.clock() + timedelta(minutes=10))
        with pytest.raises(TokenInvalid):
            services.tokens.verify(token)

    def test_access_token_is_not_a_two_factor_token(self, services) -> None:
        pair = services.tokens.issue(services.create_account())
        with pytest.raises(TokenInvalid):
            services.tokens.read_two_factor_token(pair.access_token)

    def test_expired_two_factor_token_is_invalid(self, services) -> None:
        token = services.tokens.issue_two_factor_token(42, services.clock() + timedelta(minutes=10))
        services.clock.advance(600)
        with pytest.raises(TokenInvalid):
            services.tokens.read_two_factor_token(token)

    def test_setup_token_bound_to_account(self, services) -> None:
        expires = services.clock() + timedelta(minutes=2)
        token = services.tokens.issue_setup_token(7, TwoFactorChannel.whatsapp, "+15550001111", expires)

        assert services.tokens.read_setup_token(token, 7) == (TwoFactorChannel.whatsapp, "+15550001111")
        with pytest.raises(TokenInvalid):
            services.tokens.read_setup_token(token, 8)


class TestConcurrentRefresh:
    def test_racing_refresh_is_a_replay(self, services, monkeypatch) -> None:
        account = services.create_account()
        t1 = services.tokens.issue(account)
        real_get = services.token_store.get
        winners = []

        def get_then_race(token_id: str):
            record = real_get(token_id)
            if not winners:
                # The same refresh token arrives twice; the other request rotates it first
                monkeypatch.setattr(services.token_store, "get", real_get)
                winners.append(services.tokens.refresh(t1.refresh_token)[0])
            return record

        monkeypatch.setattr(services.token_store, "get", get_then_race)
        with pytest.raises(TokenInvalid):
            services.tokens.refresh(t1.refresh_token)

        # Both members of the family are dead
        (t2,) = winners
        with pytest.raises(TokenInvalid):
            services.tokens.refresh(t2.refresh_token)
        assert services.tokens.family_of(t2.refresh_token).revoked_reason is RevokeReason.family
