"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). The store maps
rows to these; the engine components own the validity rules.

Timestamps are ISO 8601 strings as produced by auth.clock.to_iso().

Layer rule: no FastAPI or SQLAlchemy imports; only auth.clock from auth/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from auth.clock import from_iso


@dataclass
class Organization:
    """A tenant. slug is URL-safe and unique; it is carried in access tokens."""

    name: str
    slug: str
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class User:
    """A member of exactly one organization.

    email is stored lower-cased. password_hash is the serialized
    StoredPasswordHash ("iterations:salt:digest" or legacy "salt:digest").
    """

    email: str
    name: str
    role: str  # "owner", "admin", "teacher", "readonly"
    organization_id: int
    password_hash: str
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None
    last_login_at: str | None = None


@dataclass
class RefreshTokenRecord:
    """Server-side half of a refresh token.

    token_hash is a keyed one-way hash of the opaque token. The plaintext
    token is handed to the client once and never persisted.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None
    revoked_at: str | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return from_iso(self.expires_at) <= now


@dataclass
class PasswordResetToken:
    """Single-use reset credential. used_at is written exactly once."""

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    used_at: str | None = None
    created_at: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return from_iso(self.expires_at) <= now


@dataclass
class LoginAttempt:
    """Append-only audit row consumed by the brute-force guard."""

    email: str
    success: bool
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    id: int | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class AccessTokenClaims:
    """Authorization context carried inside an access token.

    Wire names (to_payload/from_payload) are sub, email, name, org, orgSlug,
    role, iat, exp. Unknown payload keys survive the round trip in extra.
    """

    subject: str
    tenant_id: str
    tenant_slug: str
    role: str
    email: str | None = None
    name: str | None = None
    issued_at: int | None = None
    expires_at: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _WIRE_KEYS = ("sub", "email", "name", "org", "orgSlug", "role", "iat", "exp")

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "sub": self.subject,
                "email": self.email,
                "name": self.name,
                "org": self.tenant_id,
                "orgSlug": self.tenant_slug,
                "role": self.role,
            }
        )
        if self.issued_at is not None:
            payload["iat"] = self.issued_at
        if self.expires_at is not None:
            payload["exp"] = self.expires_at
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AccessTokenClaims":
        """Build claims from a verified payload. Raises KeyError if sub/org/role are absent."""
        return cls(
            subject=str(payload["sub"]),
            tenant_id=str(payload["org"]),
            tenant_slug=str(payload.get("orgSlug") or ""),
            role=str(payload["role"]),
            email=payload.get("email"),
            name=payload.get("name"),
            issued_at=payload.get("iat"),
            expires_at=payload.get("exp"),
            extra={k: v for k, v in payload.items() if k not in cls._WIRE_KEYS},
        )

    @classmethod
    def for_user(cls, user: User, organization: Organization) -> "AccessTokenClaims":
        return cls(
            subject=str(user.id),
            tenant_id=str(organization.id),
            tenant_slug=organization.slug,
            role=user.role,
            email=user.email,
            name=user.name,
        )
