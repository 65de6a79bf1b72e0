"""
auth/dependencies.py -- FastAPI Depends() helpers over the security engine.

The application wires one AuthService onto app.state.auth_service at startup;
everything here reads it from the request.

  get_current_claims()  Authorization: Bearer <access token> -> AccessTokenClaims
  require_role(role)    get_current_claims + Role Policy check (403 on failure)
  rate_limit(...)       sliding-window check keyed by user id or "ip:<addr>"

Failures are raised as auth.errors.SecurityError subclasses, not
HTTPException; auth.handlers renders them into the shared error envelope.

Refresh tokens travel in an HttpOnly cookie scoped to /api/auth so they are
never sent with ordinary API requests and are invisible to scripts.

Layer rule: this is the only auth/ module besides handlers.py that imports
fastapi.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request, Response

from auth.errors import Forbidden, Unauthenticated
from auth.models import AccessTokenClaims
from auth.ratelimit import rate_limit_key
from auth.roles import Role, has_permission
from auth.service import AuthService
from core.config import get_settings

REFRESH_COOKIE_NAME = "refresh_token"
REFRESH_COOKIE_PATH = "/api/auth"


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def client_ip(request: Request) -> str:
    """The address rate limits and attempt logs are keyed by.

    X-Forwarded-For is honoured only when the socket peer is one of
    policy.trusted_proxies. The header is then read right to left and the
    first hop that is not itself a trusted proxy wins, so a client cannot pick
    its own address by prepending hops.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = get_auth_service(request).policy.trusted_proxies
    if peer not in trusted:
        return peer
    hops = [hop.strip() for hop in request.headers.get("X-Forwarded-For", "").split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return hops[0] if hops else peer


def get_current_claims(request: Request) -> AccessTokenClaims:
    """Require a valid Bearer access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: AccessTokenClaims = Depends(get_current_claims)): ...
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise Unauthenticated("Missing bearer token")
    claims = get_auth_service(request).verify_access_token(auth_header[7:])
    request.state.claims = claims
    return claims


def require_role(required: str | Role) -> Callable[[Request], AccessTokenClaims]:
    """Build a dependency that requires at least the given role.

        @router.delete("/users/{id}", dependencies=[Depends(require_role(Role.ADMIN))])
    """

    def dependency(request: Request) -> AccessTokenClaims:
        claims = get_current_claims(request)
        if not has_permission(claims.role, required):
            raise Forbidden(f"Role {claims.role!r} below required {getattr(required, 'value', required)!r}")
        return claims

    return dependency


def rate_limit(max_requests: int | None = None, window_seconds: int | None = None) -> Callable[[Request], None]:
    """Build a dependency enforcing a sliding-window limit on the current path.

    Authenticated callers (request.state.claims set by an earlier dependency)
    are keyed by user id; everyone else by client IP.
    """

    def dependency(request: Request) -> None:
        claims = getattr(request.state, "claims", None)
        key = rate_limit_key(claims.subject if claims else None, client_ip(request))
        get_auth_service(request).rate_limiter.check(key, request.url.path, max_requests, window_seconds)

    return dependency


def auth_rate_limit(request: Request) -> None:
    """The stricter tier applied to login, registration and refresh. Always keyed by IP."""
    service = get_auth_service(request)
    key = rate_limit_key(None, client_ip(request))
    service.rate_limiter.check(key, request.url.path, service.policy.auth_rate_limit_max_requests)


def set_refresh_cookie(response: Response, token: str, max_age: int, secure: bool | None = None) -> None:
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=token,
        max_age=max_age,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        samesite="strict",
        secure=get_settings().secure_cookies if secure is None else secure,
    )


def clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(key=REFRESH_COOKIE_NAME, path=REFRESH_COOKIE_PATH)


def get_refresh_cookie(request: Request) -> str | None:
    return request.cookies.get(REFRESH_COOKIE_NAME)
