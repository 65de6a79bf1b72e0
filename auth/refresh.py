"""
auth/refresh.py -- Opaque refresh tokens and password-reset tokens.

Both are random, unstructured strings handed to the client exactly once.
Only a keyed hash is stored: HMAC-SHA256(secret, "<purpose>:<token>") as hex.
Keying the hash with the root secret means a leaked token table cannot be
used to check guesses offline; the purpose prefix keeps a refresh token from
ever matching a reset-token hash.

Refresh rotation (single use, no grace period):
  lookup(token)  -> the active record, or InvalidCredential / Revoked / Expired
  rotate(record) -> revoke old then insert new in one transaction. If another
                    request already rotated the same record, the revoke matches
                    zero rows and rotate raises Revoked. Reuse of a rotated
                    token means a race or a stolen token; it is logged and
                    refused, never retried.

Reset tokens follow the same lookup/consume shape; consume() additionally sets
the new password hash and revokes every refresh token of the user.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from datetime import timedelta

from auth.clock import Clock, to_iso, utcnow
from auth.codec import b64url_encode, hex_encode
from auth.errors import ConfigurationError, Expired, InvalidCredential, Revoked
from auth.models import PasswordResetToken, RefreshTokenRecord
from auth.primitives import CryptoProvider, default_provider
from auth.store import SecurityStore, storage_guard
from core.config import SecurityPolicy

logger = logging.getLogger("krm.auth.refresh")


@dataclass(frozen=True)
class RefreshIssuance:
    token: str  # plaintext -- deliver to the client, never persist
    hash: str
    expires_at: str


def keyed_token_hash(token: str, secret: str, purpose: str, provider: CryptoProvider | None = None) -> str:
    """HMAC-SHA256(secret, "<purpose>:<token>") as hex."""
    provider = provider or default_provider
    return hex_encode(provider.sign(f"{purpose}:{token}".encode("utf-8"), secret))


def mint_refresh_token(
    user_id: int,
    secret: str,
    policy: SecurityPolicy | None = None,
    provider: CryptoProvider | None = None,
    clock: Clock = utcnow,
) -> RefreshIssuance:
    """Generate a refresh token, its storage hash and expiry. Persists nothing."""
    policy = policy or SecurityPolicy()
    provider = provider or default_provider
    token = b64url_encode(provider.random_bytes(policy.token_bytes))
    expires_at = clock() + timedelta(seconds=policy.refresh_token_ttl_seconds)
    return RefreshIssuance(
        token=token,
        hash=keyed_token_hash(token, secret, RefreshTokenManager.purpose, provider),
        expires_at=to_iso(expires_at),
    )


class _KeyedTokenHasher:
    purpose = ""

    def __init__(
        self,
        store: SecurityStore,
        secret: str,
        policy: SecurityPolicy | None,
        provider: CryptoProvider | None,
        clock: Clock,
    ) -> None:
        if not secret:
            logger.error("%s token manager constructed without a secret -- check SECRET_KEY", self.purpose)
            raise ConfigurationError("Token hashing secret is not configured")
        self.store = store
        self._secret = secret
        self.policy = policy or SecurityPolicy()
        self.provider = provider or default_provider
        self.clock = clock

    def hash_token(self, token: str) -> str:
        return keyed_token_hash(token, self._secret, self.purpose, self.provider)

    def verify(self, token: str, token_hash: str) -> bool:
        """Pure hash-and-compare. No lookup, no side effects."""
        return hmac.compare_digest(self.hash_token(token), token_hash)


class RefreshTokenManager(_KeyedTokenHasher):
    purpose = "refresh"

    def __init__(
        self,
        store: SecurityStore,
        secret: str,
        policy: SecurityPolicy | None = None,
        provider: CryptoProvider | None = None,
        clock: Clock = utcnow,
    ) -> None:
        super().__init__(store, secret, policy, provider, clock)

    def mint(self, user_id: int) -> RefreshIssuance:
        """Generate a token, its storage hash and expiry. Persists nothing."""
        return mint_refresh_token(user_id, self._secret, self.policy, self.provider, self.clock)

    def issue(self, user_id: int) -> RefreshIssuance:
        """Mint and persist a fresh session token for user_id."""
        issuance = self.mint(user_id)
        record = RefreshTokenRecord(user_id=user_id, token_hash=issuance.hash, expires_at=issuance.expires_at)
        with storage_guard("refresh token insert"):
            self.store.create_refresh_token(record, to_iso(self.clock()))
        return issuance

    def lookup(self, token: str) -> RefreshTokenRecord:
        """Return the active record for a presented token.

        Raises InvalidCredential (unknown), Revoked (already rotated or logged
        out) or Expired.
        """
        if not token:
            raise InvalidCredential("Empty refresh token")
        with storage_guard("refresh token lookup"):
            record = self.store.get_refresh_token_by_hash(self.hash_token(token))
        if record is None:
            raise InvalidCredential("Unknown refresh token")
        if record.is_revoked:
            logger.warning("Revoked refresh token presented (user_id=%s) -- possible replay", record.user_id)
            raise Revoked("Refresh token already used or revoked")
        if record.is_expired(self.clock()):
            raise Expired("Refresh token expired")
        return record

    def rotate(self, old_record: RefreshTokenRecord) -> RefreshIssuance:
        """Revoke old_record and persist a replacement atomically.

        Raises Revoked if old_record was revoked in the meantime (lost race)
        and Expired if it expired since lookup().
        """
        now = self.clock()
        if old_record.is_revoked:
            raise Revoked("Refresh token already used or revoked")
        if old_record.is_expired(now):
            raise Expired("Refresh token expired")
        issuance = self.mint(old_record.user_id)
        new_record = RefreshTokenRecord(
            user_id=old_record.user_id, token_hash=issuance.hash, expires_at=issuance.expires_at
        )
        with storage_guard("refresh token rotation"):
            new_id = self.store.rotate_refresh_token(old_record.id, new_record, to_iso(now))
        if new_id is None:
            logger.warning(
                "Concurrent rotation of refresh token id=%s (user_id=%s) -- rejecting the loser",
                old_record.id,
                old_record.user_id,
            )
            raise Revoked("Refresh token already used or revoked")
        return issuance

    def rotate_token(self, presented: str) -> RefreshIssuance:
        """lookup() then rotate(): exchange a presented token for its replacement."""
        return self.rotate(self.lookup(presented))

    def revoke(self, token: str) -> bool:
        """Revoke a presented token (logout). Unknown or already-revoked tokens return False."""
        if not token:
            return False
        with storage_guard("refresh token revoke"):
            return self.store.revoke_refresh_token(self.hash_token(token), to_iso(self.clock()))

    def revoke_all(self, user_id: int) -> int:
        with storage_guard("refresh token revoke-all"):
            return self.store.revoke_user_refresh_tokens(user_id, to_iso(self.clock()))


class PasswordResetManager(_KeyedTokenHasher):
    purpose = "password-reset"

    def __init__(
        self,
        store: SecurityStore,
        secret: str,
        policy: SecurityPolicy | None = None,
        provider: CryptoProvider | None = None,
        clock: Clock = utcnow,
    ) -> None:
        super().__init__(store, secret, policy, provider, clock)

    def issue(self, user_id: int) -> str:
        """Create and persist a reset token. Returns the plaintext for delivery."""
        now = self.clock()
        token = hex_encode(self.provider.random_bytes(self.policy.token_bytes))
        record = PasswordResetToken(
            user_id=user_id,
            token_hash=self.hash_token(token),
            expires_at=to_iso(now + timedelta(seconds=self.policy.password_reset_ttl_seconds)),
        )
        with storage_guard("reset token insert"):
            self.store.create_reset_token(record, to_iso(now))
        return token

    def lookup(self, token: str) -> PasswordResetToken:
        if not token:
            raise InvalidCredential("Empty reset token")
        with storage_guard("reset token lookup"):
            record = self.store.get_reset_token_by_hash(self.hash_token(token))
        if record is None:
            raise InvalidCredential("Unknown reset token")
        if record.used_at is not None:
            raise Revoked("Reset token already used")
        if record.is_expired(self.clock()):
            raise Expired("Reset token expired")
        return record

    def consume(self, record: PasswordResetToken, password_hash: str) -> None:
        """Mark record used, store password_hash and revoke the user's sessions."""
        with storage_guard("reset token consume"):
            consumed = self.store.consume_reset_token(record.id, record.user_id, password_hash, to_iso(self.clock()))
        if not consumed:
            raise Revoked("Reset token already used")
