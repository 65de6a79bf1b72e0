"""
tests/conftest.py -- Shared fixtures for the security engine tests.

This module provides:
  - FrozenClock: a controllable clock injected into every component, so
    expiry, lockout and rate-limit windows are crossed with advance() instead
    of sleeping
  - policy: a SecurityPolicy with a low PBKDF2 work factor so hashing tests
    stay fast (the production default of 600k iterations costs ~0.5s each)
  - store / service / acme: an in-memory SecurityStore, an AuthService over
    it, and the "Acme" organization registered with owner@acme.io
  - api_client: TestClient over a minimal FastAPI app that mounts the
    dependencies and exception handlers the way a real application would
  - proxied_client: the same app behind a trusted proxy, so X-Forwarded-For
    is honoured

Design: the api_client store uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread.

The DEBUG env var must be set before any core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from dataclasses import replace
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi import Depends, FastAPI, Request, Response
from fastapi.testclient import TestClient
from pydantic import BaseModel
from sqlalchemy.exc import OperationalError

from auth.dependencies import (
    auth_rate_limit,
    clear_refresh_cookie,
    client_ip,
    get_auth_service,
    get_current_claims,
    get_refresh_cookie,
    rate_limit,
    require_role,
    set_refresh_cookie,
)
from auth.handlers import register_exception_handlers
from auth.models import AccessTokenClaims
from auth.roles import Role
from auth.service import AuthService, LoginResult
from auth.store import SecurityStore
from core.config import SecurityPolicy

TEST_SECRET = "test-secret-key-with-more-than-32-characters"
OTHER_SECRET = "another-secret-key-with-more-than-32-characters"
START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

ACME_EMAIL = "owner@acme.io"
ACME_PASSWORD = "Secur3Pass!"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> None:
        self.now += timedelta(seconds=seconds, **kwargs)


def storage_failure(*args, **kwargs):
    """Drop-in replacement for a store method whose database is unreachable."""
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def policy() -> SecurityPolicy:
    return SecurityPolicy(pbkdf2_iterations=1_000, legacy_pbkdf2_iterations=500)


@pytest.fixture
def store() -> Generator[SecurityStore, None, None]:
    s = SecurityStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: SecurityStore, policy: SecurityPolicy, clock: FrozenClock) -> AuthService:
    return AuthService(store, TEST_SECRET, policy=policy, clock=clock)


@pytest.fixture
def acme(service: AuthService) -> LoginResult:
    """The Acme organization, registered with its owner signed in."""
    return service.register_organization("Acme", ACME_EMAIL, ACME_PASSWORD, "Acme Owner")


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    email: str
    password: str


def _make_app(service: AuthService) -> FastAPI:
    """Minimal application wiring the auth dependencies onto a few routes."""
    app = FastAPI()
    app.state.auth_service = service
    register_exception_handlers(app)

    @app.get("/api/me")
    def me(claims: AccessTokenClaims = Depends(get_current_claims)) -> dict:
        return {"sub": claims.subject, "role": claims.role, "org": claims.tenant_slug}

    @app.get("/api/admin")
    def admin_only(claims: AccessTokenClaims = Depends(require_role(Role.ADMIN))) -> dict:
        return {"role": claims.role}

    @app.get("/api/limited", dependencies=[Depends(rate_limit(max_requests=2))])
    def limited() -> dict:
        return {"ok": True}

    @app.get("/api/ip")
    def ip(request: Request) -> dict:
        return {"ip": client_ip(request)}

    @app.post("/api/auth/login", dependencies=[Depends(auth_rate_limit)])
    def login(body: LoginRequest, request: Request, response: Response) -> dict:
        svc = get_auth_service(request)
        result = svc.login(body.email, body.password, client_ip(request), request.headers.get("user-agent"))
        set_refresh_cookie(response, result.refresh_token, svc.policy.refresh_token_ttl_seconds, secure=False)
        return {"access_token": result.access_token}

    @app.post("/api/auth/refresh", dependencies=[Depends(auth_rate_limit)])
    def refresh(request: Request, response: Response) -> dict:
        svc = get_auth_service(request)
        result = svc.refresh(get_refresh_cookie(request) or "")
        set_refresh_cookie(response, result.refresh_token, svc.policy.refresh_token_ttl_seconds, secure=False)
        return {"access_token": result.access_token}

    @app.post("/api/auth/logout")
    def logout(request: Request, response: Response) -> dict:
        revoked = get_auth_service(request).logout(get_refresh_cookie(request))
        clear_refresh_cookie(response)
        return {"revoked": revoked}

    return app


def _serve(policy: SecurityPolicy, clock: FrozenClock) -> Generator[tuple[TestClient, AuthService], None, None]:
    db_url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    api_store = SecurityStore(db_url=db_url)
    svc = AuthService(api_store, TEST_SECRET, policy=policy, clock=clock)
    svc.register_organization("Acme", ACME_EMAIL, ACME_PASSWORD, "Acme Owner")

    with TestClient(_make_app(svc), raise_server_exceptions=True) as client:
        yield client, svc

    api_store.close()


@pytest.fixture
def api_client(policy: SecurityPolicy, clock: FrozenClock) -> Generator[tuple[TestClient, AuthService], None, None]:
    """Yield (client, service) with the Acme owner already registered.

    No proxy is trusted, so X-Forwarded-For is ignored and every request is
    keyed by the TestClient peer address.
    """
    yield from _serve(policy, clock)


@pytest.fixture
def proxied_client(policy: SecurityPolicy, clock: FrozenClock) -> Generator[tuple[TestClient, AuthService], None, None]:
    """Like api_client, but the TestClient peer is a trusted reverse proxy."""
    yield from _serve(replace(policy, trusted_proxies=("testclient", "10.0.0.1")), clock)
