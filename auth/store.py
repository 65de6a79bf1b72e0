"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. SecurityStore is the repository; the
_row_to_* functions are the mappers. Engine components never touch SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

Clock: the store never reads the time itself. Callers pass ISO timestamps
(auth.clock.to_iso) so sliding windows and expiries follow the injected clock.

Atomic units (one engine.begin() transaction each):
  create_organization_with_owner  -- organization row + owner row
  rotate_refresh_token            -- revoke old, THEN insert new; the insert
                                     only happens when exactly one row was
                                     revoked, so the loser of a concurrent
                                     rotation gets None and inserts nothing
  change_password                 -- new hash + revoke every active session
  consume_reset_token             -- mark used (once) + new hash + revoke sessions
  put_tenant_secret               -- update-or-insert

Hit rows (login_attempts, rate_limits) are plain inserts with no
read-modify-write, so independent writers need no coordination.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import ServiceUnavailable
from auth.models import LoginAttempt, Organization, PasswordResetToken, RefreshTokenRecord, User

logger = logging.getLogger("krm.auth.store")

_DEFAULT_DB_URL = "sqlite:///krm_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_organizations = Table(
    "organizations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(64), nullable=False, unique=True),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, nullable=False),
    Column("email", String(255), nullable=False, unique=True),  # lower-cased
    Column("password_hash", Text, nullable=False),
    Column("name", String(255), nullable=False),
    Column("role", String(30), nullable=False, server_default="teacher"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    Column("last_login_at", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, index=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("revoked_at", String(32)),  # NULL while active
)

_password_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),  # NULL until consumed
    Column("created_at", String(32), nullable=False),
)

_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("success", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Index("idx_login_attempts_email_created", "email", "created_at"),
    Index("idx_login_attempts_created", "created_at"),
)

_rate_limits = Table(
    "rate_limits",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key", String(255), nullable=False),  # user id or "ip:<address>"
    Column("endpoint", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("idx_rate_limits_key_endpoint", "key", "endpoint", "created_at"),
    Index("idx_rate_limits_created", "created_at"),
)

_tenant_secrets = Table(
    "tenant_secrets",
    _metadata,
    Column("organization_id", Integer, nullable=False),
    Column("name", String(100), nullable=False),
    Column("value", Text, nullable=False),  # "iv:ciphertext" or legacy plaintext
    Column("updated_at", String(32), nullable=False),
    PrimaryKeyConstraint("organization_id", "name"),
)


# ---------------------------------------------------------------------------
# WAL mode and error translation
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


@contextmanager
def storage_guard(operation: str) -> Iterator[None]:
    """Translate SQLAlchemy failures into ServiceUnavailable at the engine boundary."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Storage failure during %s: %s", operation, exc.__class__.__name__, exc_info=True)
        raise ServiceUnavailable(f"storage failure during {operation}") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SecurityStore:
    """Repository for every record type the security engine defines.

    Usage:
        store = SecurityStore("sqlite:///:memory:")
        user = store.get_user_by_email("owner@acme.io")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Organizations and users
    # ------------------------------------------------------------------

    def slug_exists(self, slug: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_organizations.c.id).where(_organizations.c.slug == slug)).fetchone()
        return row is not None

    def create_organization_with_owner(self, org: Organization, owner: User, created_at: str) -> tuple[int, int]:
        """Insert an organization and its first user in one transaction.

        Returns (organization_id, user_id). Raises sqlalchemy.exc.IntegrityError
        if the email or slug was taken by a concurrent request.
        """
        with self.engine.begin() as conn:
            org_id = conn.execute(
                _organizations.insert().values(
                    name=org.name,
                    slug=org.slug,
                    is_active=1 if org.is_active else 0,
                    created_at=created_at,
                )
            ).inserted_primary_key[0]
            user_id = conn.execute(
                _users.insert().values(
                    organization_id=org_id,
                    email=owner.email,
                    password_hash=owner.password_hash,
                    name=owner.name,
                    role=owner.role,
                    is_active=1 if owner.is_active else 0,
                    created_at=created_at,
                )
            ).inserted_primary_key[0]
        return org_id, user_id

    def create_user(self, user: User, created_at: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    organization_id=user.organization_id,
                    email=user.email,
                    password_hash=user.password_hash,
                    name=user.name,
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    created_at=created_at,
                )
            )
        return result.inserted_primary_key[0]

    def get_organization(self, org_id: int) -> Organization | None:
        with self.engine.connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == org_id)).fetchone()
        return _row_to_organization(row) if row is not None else None

    def set_organization_active(self, org_id: int, is_active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _organizations.update().where(_organizations.c.id == org_id).values(is_active=1 if is_active else 0)
            )
        return result.rowcount > 0

    def get_user_by_email(self, email: str) -> User | None:
        """Exact match on the lower-cased email. Callers normalize first."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_user_active(self, user_id: int, is_active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(is_active=1 if is_active else 0))
        return result.rowcount > 0

    def update_password_hash(self, user_id: int, password_hash: str, at: str) -> None:
        """Replace the stored hash without touching sessions (transparent rehash)."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(password_hash=password_hash, updated_at=at))

    def change_password(self, user_id: int, password_hash: str, at: str) -> int:
        """Store a new hash and revoke every active refresh token. Returns revoked count."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(password_hash=password_hash, updated_at=at))
            revoked = conn.execute(_revoke_user_sessions(user_id, at)).rowcount
        return revoked

    def update_last_login(self, user_id: int, at: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=at))

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord, created_at: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_insert_refresh_token(record, created_at))
        return result.inserted_primary_key[0]

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshTokenRecord | None:
        """Return the record for token_hash in any state (active, revoked or expired)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash).order_by(_refresh_tokens.c.id.desc())
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(self, old_id: int, new_record: RefreshTokenRecord, at: str) -> int | None:
        """Revoke old_id and insert new_record atomically.

        Returns the new record id, or None when old_id was already revoked
        (a concurrent rotation won). Nothing is inserted in that case.
        """
        with self.engine.begin() as conn:
            revoked = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == old_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=at)
            ).rowcount
            if revoked != 1:
                return None
            return conn.execute(_insert_refresh_token(new_record, at)).inserted_primary_key[0]

    def revoke_refresh_token(self, token_hash: str, at: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=at)
            )
        return result.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: int, at: str) -> int:
        with self.engine.begin() as conn:
            return conn.execute(_revoke_user_sessions(user_id, at)).rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, token: PasswordResetToken, created_at: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_reset_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    created_at=created_at,
                )
            )
        return result.inserted_primary_key[0]

    def get_reset_token_by_hash(self, token_hash: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _password_reset_tokens.select().where(_password_reset_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def consume_reset_token(self, token_id: int, user_id: int, password_hash: str, at: str) -> bool:
        """Mark the token used, set the new hash, revoke sessions -- all or nothing.

        Returns False (and writes nothing) if the token was already used.
        """
        with self.engine.begin() as conn:
            used = conn.execute(
                _password_reset_tokens.update()
                .where((_password_reset_tokens.c.id == token_id) & (_password_reset_tokens.c.used_at.is_(None)))
                .values(used_at=at)
            ).rowcount
            if used != 1:
                return False
            conn.execute(_users.update().where(_users.c.id == user_id).values(password_hash=password_hash, updated_at=at))
            conn.execute(_revoke_user_sessions(user_id, at))
        return True

    # ------------------------------------------------------------------
    # Login attempts
    # ------------------------------------------------------------------

    def record_login_attempt(self, attempt: LoginAttempt, created_at: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _login_attempts.insert().values(
                    email=attempt.email,
                    ip_address=attempt.ip_address,
                    user_agent=attempt.user_agent,
                    success=1 if attempt.success else 0,
                    created_at=created_at,
                )
            )

    def count_failed_attempts(self, email: str, since: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_login_attempts)
                .where(
                    (_login_attempts.c.email == email)
                    & (_login_attempts.c.success == 0)
                    & (_login_attempts.c.created_at > since)
                )
            ).scalar()
        return result or 0

    def clear_failed_attempts(self, email: str) -> int:
        with self.engine.begin() as conn:
            return conn.execute(
                delete(_login_attempts).where((_login_attempts.c.email == email) & (_login_attempts.c.success == 0))
            ).rowcount

    def prune_login_attempts(self, before: str) -> int:
        with self.engine.begin() as conn:
            return conn.execute(delete(_login_attempts).where(_login_attempts.c.created_at < before)).rowcount

    def list_login_attempts(self, email: str) -> list[LoginAttempt]:
        """Audit view, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _login_attempts.select().where(_login_attempts.c.email == email).order_by(_login_attempts.c.id)
            ).fetchall()
        return [_row_to_login_attempt(r) for r in rows]

    # ------------------------------------------------------------------
    # Rate limit hits
    # ------------------------------------------------------------------

    def count_hits(self, key: str, endpoint: str, since: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_rate_limits)
                .where(
                    (_rate_limits.c["key"] == key) & (_rate_limits.c.endpoint == endpoint) & (_rate_limits.c.created_at > since)
                )
            ).scalar()
        return result or 0

    def record_hit(self, key: str, endpoint: str, at: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_rate_limits.insert().values(key=key, endpoint=endpoint, created_at=at))

    def prune_hits(self, before: str) -> int:
        with self.engine.begin() as conn:
            return conn.execute(delete(_rate_limits).where(_rate_limits.c.created_at < before)).rowcount

    # ------------------------------------------------------------------
    # Tenant secrets
    # ------------------------------------------------------------------

    def put_tenant_secret(self, org_id: int, name: str, value: str, at: str) -> None:
        with self.engine.begin() as conn:
            updated = conn.execute(
                _tenant_secrets.update()
                .where((_tenant_secrets.c.organization_id == org_id) & (_tenant_secrets.c["name"] == name))
                .values(value=value, updated_at=at)
            ).rowcount
            if updated == 0:
                conn.execute(_tenant_secrets.insert().values(organization_id=org_id, name=name, value=value, updated_at=at))

    def get_tenant_secret(self, org_id: int, name: str) -> str | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_tenant_secrets.c.value).where(
                    (_tenant_secrets.c.organization_id == org_id) & (_tenant_secrets.c["name"] == name)
                )
            ).fetchone()
        return row.value if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Statement builders shared by single and batched writes
# ---------------------------------------------------------------------------


def _insert_refresh_token(record: RefreshTokenRecord, created_at: str):
    return _refresh_tokens.insert().values(
        user_id=record.user_id,
        token_hash=record.token_hash,
        expires_at=record.expires_at,
        created_at=created_at,
    )


def _revoke_user_sessions(user_id: int, at: str):
    return (
        _refresh_tokens.update()
        .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked_at.is_(None)))
        .values(revoked_at=at)
    )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_organization(row) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        slug=row.slug,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        organization_id=row.organization_id,
        email=row.email,
        password_hash=row.password_hash,
        name=row.name,
        role=row.role,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login_at=row.last_login_at,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        created_at=row.created_at,
        revoked_at=row.revoked_at,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
    )


def _row_to_login_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        id=row.id,
        email=row.email,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        success=bool(row.success),
        created_at=row.created_at,
    )
