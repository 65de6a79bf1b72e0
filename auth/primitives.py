"""
auth/primitives.py -- Capability interface over the platform crypto primitives.

Engine components never touch hashlib/cryptography/jose directly; they receive
a CryptoProvider and call random_bytes / sign / pbkdf2 / derive_key /
aead_encrypt / aead_decrypt. Tests substitute a deterministic provider
(fixed random bytes) without monkeypatching modules.

DefaultCryptoProvider backends:
  random_bytes  secrets.token_bytes (OS CSPRNG)
  sign          HMAC-SHA256 via python-jose's HMACKey, the same key object
                jose uses when it signs HS256 tokens
  pbkdf2        cryptography PBKDF2HMAC(SHA-256)
  derive_key    cryptography HKDF(SHA-256)
  aead_*        cryptography AESGCM (256-bit key, 96-bit nonce, 128-bit tag)
"""

from __future__ import annotations

import secrets
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from jose import jwk
from jose.constants import ALGORITHMS

from auth.errors import IntegrityError


class CryptoProvider(Protocol):
    def random_bytes(self, n: int) -> bytes: ...

    def sign(self, data: bytes, key: str | bytes) -> bytes: ...

    def pbkdf2(self, password: bytes, salt: bytes, iterations: int, length: int) -> bytes: ...

    def derive_key(self, secret: bytes, salt: bytes, info: bytes, length: int) -> bytes: ...

    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes) -> bytes: ...

    def aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        """Raise auth.errors.IntegrityError when the tag does not verify."""
        ...


class DefaultCryptoProvider:
    def random_bytes(self, n: int) -> bytes:
        return secrets.token_bytes(n)

    def sign(self, data: bytes, key: str | bytes) -> bytes:
        return jwk.construct(key, ALGORITHMS.HS256).sign(data)

    def pbkdf2(self, password: bytes, salt: bytes, iterations: int, length: int) -> bytes:
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=length, salt=salt, iterations=iterations)
        return kdf.derive(password)

    def derive_key(self, secret: bytes, salt: bytes, info: bytes, length: int) -> bytes:
        return HKDF(algorithm=hashes.SHA256(), length=length, salt=salt, info=info).derive(secret)

    def aead_encrypt(self, key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
        return AESGCM(key).encrypt(nonce, plaintext, None)

    def aead_decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        try:
            return AESGCM(key).decrypt(nonce, ciphertext, None)
        except (InvalidTag, ValueError) as exc:
            # ValueError covers nonces of the wrong length from corrupted input.
            raise IntegrityError("AES-GCM authentication failed") from exc


default_provider = DefaultCryptoProvider()
