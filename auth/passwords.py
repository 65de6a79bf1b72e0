"""
auth/passwords.py -- Salted PBKDF2-HMAC-SHA256 password hashing.

Stored format (StoredPasswordHash.serialize()):
    "<iterations>:<base64 salt>:<base64 digest>"
Legacy two-part values written before the work factor was recorded:
    "<base64 salt>:<base64 digest>"   -> SecurityPolicy.legacy_pbkdf2_iterations

Verification re-derives the digest with the *stored* salt and iteration count
and compares bytes with hmac.compare_digest, which accumulates the XOR of every
byte pair instead of returning at the first mismatch. A successful match
against a lower iteration count than the current policy reports
needs_rehash=True so the caller can re-save a fresh hash; the login itself is
never blocked on it.

A malformed stored value (no delimiter, empty parts, bad base64, non-numeric
or out-of-range iterations) verifies as invalid. verify() never raises.

Passwords are encoded as UTF-8 with "surrogatepass", so any str a JSON body
can carry (lone surrogates included) hashes and verifies.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

from auth.codec import b64decode, b64encode
from auth.errors import MalformedInput
from auth.primitives import CryptoProvider, default_provider
from core.config import SecurityPolicy

logger = logging.getLogger("krm.auth.passwords")

_DELIMITER = ":"


@dataclass(frozen=True)
class StoredPasswordHash:
    salt: bytes
    digest: bytes
    iterations: int

    def serialize(self) -> str:
        return _DELIMITER.join((str(self.iterations), b64encode(self.salt), b64encode(self.digest)))

    @classmethod
    def parse(cls, value: str, legacy_iterations: int, max_iterations: int) -> "StoredPasswordHash":
        """Parse a stored hash. Raises MalformedInput on any structural problem."""
        if not value or _DELIMITER not in value:
            raise MalformedInput("Stored hash is missing its delimiter")
        parts = value.split(_DELIMITER)
        if len(parts) == 2:
            iterations = legacy_iterations
            salt_text, digest_text = parts
        elif len(parts) == 3:
            try:
                iterations = int(parts[0])
            except ValueError as exc:
                raise MalformedInput("Stored hash has a non-numeric work factor") from exc
            salt_text, digest_text = parts[1], parts[2]
        else:
            raise MalformedInput("Stored hash has an unexpected number of fields")
        if not salt_text or not digest_text or iterations <= 0:
            raise MalformedInput("Stored hash has an empty field")
        if iterations > max_iterations:
            raise MalformedInput(f"Stored hash work factor {iterations} exceeds {max_iterations}")
        return cls(salt=b64decode(salt_text), digest=b64decode(digest_text), iterations=iterations)


@dataclass(frozen=True)
class PasswordCheck:
    valid: bool
    needs_rehash: bool = False


class PasswordHasher:
    def __init__(self, policy: SecurityPolicy | None = None, provider: CryptoProvider | None = None) -> None:
        self.policy = policy or SecurityPolicy()
        self.provider = provider or default_provider
        self._dummy: str | None = None

    def hash(self, password: str) -> StoredPasswordHash:
        salt = self.provider.random_bytes(self.policy.salt_length)
        iterations = self.policy.pbkdf2_iterations
        return StoredPasswordHash(salt=salt, digest=self._derive(password, salt, iterations), iterations=iterations)

    def verify(self, password: str, stored: str | StoredPasswordHash) -> PasswordCheck:
        try:
            if isinstance(stored, str):
                stored = StoredPasswordHash.parse(
                    stored, self.policy.legacy_pbkdf2_iterations, self.policy.max_pbkdf2_iterations
                )
            computed = self._derive(password, stored.salt, stored.iterations, len(stored.digest))
        except MalformedInput as exc:
            logger.warning("Password verification against malformed hash: %s", exc.detail)
            return PasswordCheck(valid=False)
        if not hmac.compare_digest(computed, stored.digest):
            return PasswordCheck(valid=False)
        return PasswordCheck(valid=True, needs_rehash=stored.iterations < self.policy.pbkdf2_iterations)

    def dummy_verify(self, password: str) -> None:
        """Burn one full verification so unknown accounts cost the same as real ones.

        The dummy hash is computed on first use and cached on the instance.
        """
        if self._dummy is None:
            self._dummy = self.hash("krm_timing_dummy").serialize()
        self.verify(password, self._dummy)

    def _derive(self, password: str, salt: bytes, iterations: int, length: int | None = None) -> bytes:
        secret = password.encode("utf-8", "surrogatepass")
        return self.provider.pbkdf2(secret, salt, iterations, length or self.policy.hash_length)


_default_hasher = PasswordHasher()


def hash_password(plain: str) -> str:
    """Return the serialized hash of plain under the default policy."""
    return _default_hasher.hash(plain).serialize()


def verify_password(plain: str, stored: str) -> PasswordCheck:
    """Check plain against a serialized hash under the default policy."""
    return _default_hasher.verify(plain, stored)
