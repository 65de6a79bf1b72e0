"""
auth/service.py -- Account flows composed from the engine components.

AuthService is what the routing layer calls. It owns no state of its own;
every method is a sequence of component calls plus store reads/writes:

  register_organization  validate -> unique slug -> org + owner (one tx) -> tokens
  login                  lockout -> lookup -> verify (dummy for unknown email)
                         -> active checks -> record -> rehash -> tokens
  refresh                lookup -> active checks -> rotate -> new access token
  logout                 revoke presented refresh token
  request_password_reset issue a reset token (None for unknown/inactive users)
  reset_password         lookup -> hash -> consume (sets hash, revokes sessions)
  change_password        verify current -> store new hash, revoke sessions
  set/get_tenant_secret  encrypt on write, decrypt on read

Anti-enumeration: unknown email and wrong password produce the same
InvalidCredential and cost one full PBKDF2 derivation each.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError as SQLIntegrityError

from auth.cipher import SecretCipher
from auth.clock import Clock, to_iso, utcnow
from auth.errors import (
    AccountDisabled,
    AlreadyExists,
    InvalidCredential,
    MalformedInput,
    SecurityError,
    ServiceUnavailable,
)
from auth.guard import BruteForceGuard, normalize_email
from auth.models import AccessTokenClaims, Organization, User
from auth.passwords import PasswordHasher
from auth.primitives import CryptoProvider, default_provider
from auth.ratelimit import RateLimiter
from auth.refresh import PasswordResetManager, RefreshIssuance, RefreshTokenManager
from auth.roles import Role
from auth.store import SecurityStore, storage_guard
from auth.tokens import AccessTokenCodec
from core.config import SecurityPolicy

logger = logging.getLogger("krm.auth")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str
    refresh_expires_at: str
    user: User
    organization: Organization


def slugify(name: str) -> str:
    """Lower-case, collapse non-alphanumerics to single hyphens, trim to 50 chars."""
    slug = _SLUG_STRIP_RE.sub("-", name.lower()).strip("-")
    return slug[:50].rstrip("-") or "org"


def _require_utf8(value: str, field: str) -> None:
    """Text headed for storage must encode; passwords are exempt (see passwords.py)."""
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise MalformedInput(f"{field} is not valid UTF-8") from exc


class AuthService:
    def __init__(
        self,
        store: SecurityStore,
        secret: str,
        policy: SecurityPolicy | None = None,
        provider: CryptoProvider | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.policy = policy or SecurityPolicy()
        self.provider = provider or default_provider
        self.clock = clock
        self._secret = secret
        self.hasher = PasswordHasher(self.policy, self.provider)
        self.cipher = SecretCipher(self.provider)
        self.tokens = AccessTokenCodec(secret, self.policy, self.provider, clock)
        self.refresh_tokens = RefreshTokenManager(store, secret, self.policy, self.provider, clock)
        self.reset_tokens = PasswordResetManager(store, secret, self.policy, self.provider, clock)
        self.guard = BruteForceGuard(store, self.policy, clock)
        self.rate_limiter = RateLimiter(store, self.policy, clock)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register_organization(self, organization_name: str, email: str, password: str, name: str) -> LoginResult:
        """Create an organization with its owner and sign the owner in."""
        if not organization_name or not email or not password or not name:
            raise MalformedInput("Organization name, email, password and name are required")
        email = normalize_email(email)
        _require_utf8(email, "Email")
        _require_utf8(name, "Name")
        _require_utf8(organization_name, "Organization name")
        if not _EMAIL_RE.match(email):
            raise MalformedInput("Invalid email format")
        self._check_password_strength(password)

        with storage_guard("registration"):
            if self.store.get_user_by_email(email) is not None:
                raise AlreadyExists("Email already registered")
            slug = self._unique_slug(organization_name.strip())

        org = Organization(name=organization_name.strip(), slug=slug)
        owner = User(
            email=email,
            name=name.strip(),
            role=Role.OWNER.value,
            organization_id=0,
            password_hash=self.hasher.hash(password).serialize(),
        )
        try:
            with storage_guard("registration"):
                org.id, owner.id = self.store.create_organization_with_owner(org, owner, to_iso(self.clock()))
        except ServiceUnavailable as exc:
            if isinstance(exc.__cause__, SQLIntegrityError):
                # A concurrent registration took the email or slug.
                raise AlreadyExists("Email already registered") from exc
            raise
        owner.organization_id = org.id
        logger.info("Registered organization %s (id=%s) with owner id=%s", org.slug, org.id, owner.id)
        return self._start_session(owner, org)

    def login(
        self, email: str, password: str, ip_address: str | None = None, user_agent: str | None = None
    ) -> LoginResult:
        if not email or not password:
            raise MalformedInput("Email and password are required")
        email = normalize_email(email)
        _require_utf8(email, "Email")
        self.guard.check(email)

        with storage_guard("login lookup"):
            user = self.store.get_user_by_email(email)
        if user is None:
            self.hasher.dummy_verify(password)
            self.guard.record(email, False, ip_address, user_agent)
            raise InvalidCredential("Unknown email")

        check = self.hasher.verify(password, user.password_hash)
        if not check.valid:
            self.guard.record(email, False, ip_address, user_agent)
            raise InvalidCredential("Wrong password")

        with storage_guard("login lookup"):
            org = self.store.get_organization(user.organization_id)
        if not user.is_active or org is None or not org.is_active:
            self.guard.record(email, False, ip_address, user_agent)
            raise AccountDisabled("User or organization inactive")

        self.guard.record(email, True, ip_address, user_agent)
        self.guard.clear_failures(email)
        if check.needs_rehash and self.policy.rehash_on_login:
            self._rehash(user, password)
        now = to_iso(self.clock())
        with storage_guard("last login update"):
            self.store.update_last_login(user.id, now)
        user.last_login_at = now
        return self._start_session(user, org)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def refresh(self, presented_token: str) -> LoginResult:
        """Rotate a refresh token and issue a new access token."""
        record = self.refresh_tokens.lookup(presented_token)
        with storage_guard("refresh lookup"):
            user = self.store.get_user_by_id(record.user_id)
            org = self.store.get_organization(user.organization_id) if user is not None else None
        if user is None or not user.is_active or org is None or not org.is_active:
            raise AccountDisabled("User or organization inactive")
        issuance = self.refresh_tokens.rotate(record)
        return self._result(user, org, issuance)

    def logout(self, presented_token: str | None) -> bool:
        """Revoke the presented refresh token. Idempotent."""
        if not presented_token:
            return False
        return self.refresh_tokens.revoke(presented_token)

    def issue_access_token(self, user: User, organization: Organization) -> str:
        return self.tokens.issue(AccessTokenClaims.for_user(user, organization))

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        return self.tokens.decode(token)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> str | None:
        """Return a reset token for delivery, or None when there is no active account.

        Callers must respond identically in both cases.
        """
        email = normalize_email(email)
        _require_utf8(email, "Email")
        with storage_guard("reset lookup"):
            user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive account")
            return None
        return self.reset_tokens.issue(user.id)

    def reset_password(self, token: str, new_password: str) -> None:
        if not token or not new_password:
            raise MalformedInput("Token and new password are required")
        self._check_password_strength(new_password)
        record = self.reset_tokens.lookup(token)
        self.reset_tokens.consume(record, self.hasher.hash(new_password).serialize())
        logger.info("Password reset completed for user id=%s", record.user_id)

    def change_password(self, user_id: int, current_password: str, new_password: str) -> int:
        """Replace the password after verifying the current one. Returns sessions revoked."""
        if not current_password or not new_password:
            raise MalformedInput("Current and new password are required")
        self._check_password_strength(new_password)
        with storage_guard("password change lookup"):
            user = self.store.get_user_by_id(user_id)
        if user is None or not self.hasher.verify(current_password, user.password_hash).valid:
            raise InvalidCredential("Current password incorrect")
        with storage_guard("password change"):
            revoked = self.store.change_password(
                user_id, self.hasher.hash(new_password).serialize(), to_iso(self.clock())
            )
        logger.info("Password changed for user id=%s; %d sessions revoked", user_id, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Tenant secrets
    # ------------------------------------------------------------------

    def set_tenant_secret(self, organization_id: int, name: str, value: str) -> None:
        stored = self.cipher.encrypt(value, self._secret).serialize()
        with storage_guard("tenant secret write"):
            self.store.put_tenant_secret(organization_id, name, stored, to_iso(self.clock()))

    def get_tenant_secret(self, organization_id: int, name: str) -> str | None:
        with storage_guard("tenant secret read"):
            stored = self.store.get_tenant_secret(organization_id, name)
        if stored is None:
            return None
        return self.cipher.decrypt(stored, self._secret)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_session(self, user: User, org: Organization) -> LoginResult:
        return self._result(user, org, self.refresh_tokens.issue(user.id))

    def _result(self, user: User, org: Organization, issuance: RefreshIssuance) -> LoginResult:
        return LoginResult(
            access_token=self.issue_access_token(user, org),
            refresh_token=issuance.token,
            refresh_expires_at=issuance.expires_at,
            user=user,
            organization=org,
        )

    def _check_password_strength(self, password: str) -> None:
        if len(password) < self.policy.min_password_length:
            raise MalformedInput(f"Password must be at least {self.policy.min_password_length} characters")

    def _unique_slug(self, organization_name: str) -> str:
        base = slugify(organization_name)
        slug, counter = base, 1
        while self.store.slug_exists(slug):
            slug = f"{base}-{counter}"
            counter += 1
        return slug

    def _rehash(self, user: User, password: str) -> None:
        """Best-effort upgrade of a hash written under a lower work factor."""
        new_hash = self.hasher.hash(password).serialize()
        try:
            with storage_guard("password rehash"):
                self.store.update_password_hash(user.id, new_hash, to_iso(self.clock()))
        except SecurityError:
            logger.warning("Transparent rehash failed for user id=%s", user.id, exc_info=True)
            return
        user.password_hash = new_hash
        logger.info("Upgraded password hash for user id=%s", user.id)
