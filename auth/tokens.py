"""
auth/tokens.py -- Stateless signed access tokens (compact HS256 JWS).

Security design decisions:
  Issuance: python-jose jwt.encode with HS256. iat and exp are stamped from
       the injected clock; exp = iat + TTL (default 15 minutes). The payload
       carries identity, tenant and role so verification alone yields a
       complete authorization context -- no lookup per request.

  Verification order is fixed and must not be rearranged:
       1. structure  -- exactly three dot-separated segments, else MalformedToken
       2. signature  -- recompute HMAC-SHA256 over "header.payload" and compare
                        bytes with hmac.compare_digest, else InvalidSignature
       3. expiry     -- only now decode the payload and compare exp to the clock,
                        else Expired
       Nothing in the payload (exp included) is read before step 2 passes, so
       a forged exp cannot extend a token's life.

  No caching: every verify() recomputes the signature and re-reads the clock.

  verify() returns a TokenVerification and never raises; decode() is the
  raising variant used by FastAPI dependencies.
"""

from __future__ import annotations

import hmac
import json
import logging
from dataclasses import dataclass
from datetime import timedelta

from jose import jwt
from jose.constants import ALGORITHMS

from auth.clock import Clock, utcnow
from auth.codec import b64url_decode
from auth.errors import ConfigurationError, Expired, InvalidSignature, MalformedInput, MalformedToken, SecurityError
from auth.models import AccessTokenClaims
from auth.primitives import CryptoProvider, default_provider
from core.config import SecurityPolicy

logger = logging.getLogger("krm.auth.tokens")

_ALGORITHM = ALGORITHMS.HS256


@dataclass(frozen=True)
class TokenVerification:
    valid: bool
    claims: AccessTokenClaims | None = None
    error: SecurityError | None = None


class AccessTokenCodec:
    """Issue and verify access tokens signed with one shared secret."""

    def __init__(
        self,
        secret: str,
        policy: SecurityPolicy | None = None,
        provider: CryptoProvider | None = None,
        clock: Clock = utcnow,
    ) -> None:
        if not secret:
            logger.error("Access token codec constructed without a signing secret -- check SECRET_KEY")
            raise ConfigurationError("Token signing secret is not configured")
        self._secret = secret
        self.policy = policy or SecurityPolicy()
        self.provider = provider or default_provider
        self.clock = clock

    def issue(self, claims: AccessTokenClaims, ttl_seconds: int | None = None) -> str:
        """Encode claims into a signed token string safe for an Authorization header.

        Args:
            claims:      Identity/tenant/role. Any iat/exp already set are replaced.
            ttl_seconds: Lifetime override. Defaults to policy.access_token_ttl_seconds.
        """
        ttl = ttl_seconds if ttl_seconds is not None else self.policy.access_token_ttl_seconds
        now = self.clock()
        payload = claims.to_payload()
        payload["iat"] = int(now.timestamp())
        payload["exp"] = int((now + timedelta(seconds=ttl)).timestamp())
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def decode(self, token: str) -> AccessTokenClaims:
        """Verify token and return its claims. Raises MalformedToken, InvalidSignature or Expired."""
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3 or not all(parts[:2]):
            raise MalformedToken("Token must have three segments")
        header_b64, payload_b64, signature_b64 = parts

        try:
            signing_input = f"{header_b64}.{payload_b64}".encode("ascii")
            presented = b64url_decode(signature_b64)
        except (MalformedInput, UnicodeEncodeError) as exc:
            raise MalformedToken("Token segments are not base64url") from exc
        expected = self.provider.sign(signing_input, self._secret)
        if not hmac.compare_digest(presented, expected):
            raise InvalidSignature("Signature mismatch")

        try:
            payload = json.loads(b64url_decode(payload_b64))
        except (MalformedInput, ValueError) as exc:
            raise MalformedToken("Payload segment is not base64url JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedToken("Payload is not a JSON object")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise MalformedToken("Token has no numeric exp claim")
        if self.clock().timestamp() >= exp:
            raise Expired("Token expired")

        try:
            return AccessTokenClaims.from_payload(payload)
        except KeyError as exc:
            raise MalformedToken(f"Token is missing the {exc.args[0]} claim") from exc

    def verify(self, token: str) -> TokenVerification:
        try:
            return TokenVerification(valid=True, claims=self.decode(token))
        except SecurityError as exc:
            logger.debug("Access token rejected: %s", exc.detail)
            return TokenVerification(valid=False, error=exc)


def issue_access_token(claims: AccessTokenClaims, secret: str, ttl_seconds: int | None = None) -> str:
    """Issue a token with the default policy and wall clock."""
    return AccessTokenCodec(secret).issue(claims, ttl_seconds)


def verify_access_token(token: str, secret: str) -> TokenVerification:
    """Verify a token with the default policy and wall clock. Never raises.

    A missing secret still yields a TokenVerification carrying ConfigurationError.
    """
    try:
        codec = AccessTokenCodec(secret)
    except ConfigurationError as exc:
        return TokenVerification(valid=False, error=exc)
    return codec.verify(token)
