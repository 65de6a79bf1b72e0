"""Unit tests for auth/refresh.py -- refresh-token lifecycle and reset tokens.

Covers:
- mint() returns an opaque token, its keyed hash and a 7 day expiry, persisting nothing
- verify() is a pure hash-and-compare
- lookup() distinguishes unknown / revoked / expired
- rotate() revokes the old record and persists a new one
- rotating the same original twice: exactly one success
- revoke() (logout) and revoke_all()
- reset tokens: single use, 1 hour lifetime, consume() sets the hash and
  revokes sessions
"""

from datetime import timedelta

import pytest

from auth.clock import from_iso
from auth.errors import ConfigurationError, Expired, InvalidCredential, Revoked, ServiceUnavailable
from auth.models import Organization, User
from auth.refresh import PasswordResetManager, RefreshTokenManager, mint_refresh_token

from conftest import START, storage_failure

SECRET = "refresh-hash-secret-0123456789abcdef"


@pytest.fixture
def user_id(store):
    org = Organization(name="Acme", slug="acme")
    owner = User(email="owner@acme.io", name="Owner", role="owner", organization_id=0, password_hash="x:y")
    _, uid = store.create_organization_with_owner(org, owner, "2026-01-01T00:00:00.000000+00:00")
    return uid


@pytest.fixture
def manager(store, policy, clock):
    return RefreshTokenManager(store, SECRET, policy=policy, clock=clock)


@pytest.fixture
def resets(store, policy, clock):
    return PasswordResetManager(store, SECRET, policy=policy, clock=clock)


class TestMint:
    def test_mint_persists_nothing(self, manager, store, user_id):
        issuance = manager.mint(user_id)
        assert store.get_refresh_token_by_hash(issuance.hash) is None

    def test_mint_shape(self, manager, user_id):
        issuance = manager.mint(user_id)
        assert len(issuance.token) == 43  # 32 bytes, base64url, unpadded
        assert len(issuance.hash) == 64
        assert issuance.token not in issuance.hash
        assert from_iso(issuance.expires_at) == START + timedelta(days=7)

    def test_tokens_are_unique(self, manager, user_id):
        assert manager.mint(user_id).token != manager.mint(user_id).token

    def test_verify_is_pure(self, manager, user_id):
        issuance = manager.mint(user_id)
        assert manager.verify(issuance.token, issuance.hash) is True
        assert manager.verify(issuance.token + "x", issuance.hash) is False

    def test_hash_is_keyed(self, manager, store, policy, clock, user_id):
        other = RefreshTokenManager(store, "a-completely-different-secret-value", policy=policy, clock=clock)
        issuance = manager.mint(user_id)
        assert other.hash_token(issuance.token) != issuance.hash

    def test_empty_secret_rejected(self, store):
        with pytest.raises(ConfigurationError):
            RefreshTokenManager(store, "")

    def test_module_mint_matches_manager_hash(self, manager, policy, clock, user_id):
        issuance = mint_refresh_token(user_id, SECRET, policy, clock=clock)
        assert manager.verify(issuance.token, issuance.hash) is True
        assert issuance.expires_at == manager.mint(user_id).expires_at


class TestLookup:
    def test_issued_token_found(self, manager, user_id):
        issuance = manager.issue(user_id)
        record = manager.lookup(issuance.token)
        assert record.user_id == user_id
        assert record.revoked_at is None

    def test_unknown_token(self, manager, user_id):
        with pytest.raises(InvalidCredential):
            manager.lookup("never-issued")

    def test_empty_token(self, manager):
        with pytest.raises(InvalidCredential):
            manager.lookup("")

    def test_expired_token(self, manager, clock, user_id):
        issuance = manager.issue(user_id)
        clock.advance(days=7)
        with pytest.raises(Expired):
            manager.lookup(issuance.token)

    def test_storage_failure_is_translated(self, manager, store, monkeypatch, user_id):
        issuance = manager.issue(user_id)
        monkeypatch.setattr(store, "get_refresh_token_by_hash", storage_failure)
        with pytest.raises(ServiceUnavailable):
            manager.lookup(issuance.token)


class TestRotate:
    def test_rotate_presented_token(self, manager, user_id):
        original = manager.issue(user_id)
        rotated = manager.rotate_token(original.token)
        assert manager.lookup(rotated.token).user_id == user_id
        with pytest.raises(Revoked):
            manager.rotate_token(original.token)

    def test_rotation_replaces_token(self, manager, user_id):
        original = manager.issue(user_id)
        rotated = manager.rotate(manager.lookup(original.token))
        assert rotated.token != original.token
        assert manager.lookup(rotated.token).user_id == user_id
        with pytest.raises(Revoked):
            manager.lookup(original.token)

    def test_concurrent_rotation_has_one_winner(self, manager, store, user_id):
        original = manager.issue(user_id)
        # Both requests looked the token up before either rotated it.
        first_view = manager.lookup(original.token)
        second_view = manager.lookup(original.token)
        winner = manager.rotate(first_view)
        with pytest.raises(Revoked):
            manager.rotate(second_view)
        assert manager.lookup(winner.token).user_id == user_id

    def test_rotating_revoked_record_rejected(self, manager, store, user_id):
        original = manager.issue(user_id)
        manager.rotate(manager.lookup(original.token))
        stale = store.get_refresh_token_by_hash(original.hash)
        with pytest.raises(Revoked):
            manager.rotate(stale)

    def test_rotating_expired_record_rejected(self, manager, clock, user_id):
        original = manager.issue(user_id)
        record = manager.lookup(original.token)
        clock.advance(days=8)
        with pytest.raises(Expired):
            manager.rotate(record)


class TestRevoke:
    def test_logout_revokes(self, manager, user_id):
        issuance = manager.issue(user_id)
        assert manager.revoke(issuance.token) is True
        assert manager.revoke(issuance.token) is False
        with pytest.raises(Revoked):
            manager.lookup(issuance.token)

    def test_revoke_unknown_is_noop(self, manager):
        assert manager.revoke("never-issued") is False
        assert manager.revoke("") is False

    def test_revoke_all(self, manager, user_id):
        tokens = [manager.issue(user_id).token for _ in range(3)]
        assert manager.revoke_all(user_id) == 3
        for token in tokens:
            with pytest.raises(Revoked):
                manager.lookup(token)


class TestPasswordReset:
    def test_issue_returns_hex_token(self, resets, user_id):
        token = resets.issue(user_id)
        assert len(token) == 64
        int(token, 16)

    def test_consume_sets_hash_and_revokes_sessions(self, resets, manager, store, user_id):
        session = manager.issue(user_id)
        record = resets.lookup(resets.issue(user_id))
        resets.consume(record, "1000:AAAA:BBBB")
        assert store.get_user_by_id(user_id).password_hash == "1000:AAAA:BBBB"
        with pytest.raises(Revoked):
            manager.lookup(session.token)

    def test_single_use(self, resets, user_id):
        token = resets.issue(user_id)
        record = resets.lookup(token)
        resets.consume(record, "1000:AAAA:BBBB")
        with pytest.raises(Revoked):
            resets.lookup(token)
        with pytest.raises(Revoked):
            resets.consume(record, "1000:CCCC:DDDD")

    def test_expires_after_one_hour(self, resets, clock, user_id):
        token = resets.issue(user_id)
        clock.advance(seconds=3599)
        resets.lookup(token)
        clock.advance(seconds=1)
        with pytest.raises(Expired):
            resets.lookup(token)

    def test_refresh_token_is_not_a_reset_token(self, resets, manager, user_id):
        session = manager.issue(user_id)
        with pytest.raises(InvalidCredential):
            resets.lookup(session.token)
