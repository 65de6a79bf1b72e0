"""
auth/cipher.py -- At-rest encryption of tenant-held third-party secrets.

Scheme: AES-256-GCM with a key derived from the root secret via
HKDF-SHA256. The HKDF salt/info pair is a fixed, versioned context: a future
change to key derivation ships as a new context (..-v2) and leaves values
written under v1 decryptable.

Stored format: "<base64 iv>:<base64 ciphertext+tag>". A fresh 96-bit IV is
drawn for every encrypt() call, so the same plaintext never encrypts to the
same value and an IV is never reused under the derived key.

Legacy plaintext: values written before encryption was introduced contain no
delimiter. parse_stored_secret() classifies them as LegacyPlaintext and
decrypt() hands them back unchanged. Removing migration support means
deleting the LegacyPlaintext branch -- grep for it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from auth.codec import b64decode, b64encode
from auth.errors import ConfigurationError, IntegrityError, MalformedInput
from auth.primitives import CryptoProvider, default_provider

logger = logging.getLogger("krm.auth.cipher")

_DELIMITER = ":"
_IV_LENGTH = 12
_KEY_LENGTH = 32

# Versioned key-derivation context. Changing either value makes every stored
# secret undecryptable -- add a new version instead.
_KDF_SALT = b"krm-api-key-encryption-v1"
_KDF_INFO = b"api-key-encryption"


@dataclass(frozen=True)
class EncryptedSecret:
    iv: bytes
    ciphertext: bytes

    def serialize(self) -> str:
        return f"{b64encode(self.iv)}{_DELIMITER}{b64encode(self.ciphertext)}"


@dataclass(frozen=True)
class LegacyPlaintext:
    value: str


StoredSecret = Union[EncryptedSecret, LegacyPlaintext]


def parse_stored_secret(data: str) -> StoredSecret:
    """Classify a stored value as encrypted or legacy plaintext.

    Raises IntegrityError when the delimiter is present but a part is empty
    or not valid base64: either way the stored value is corrupted.
    """
    if _DELIMITER not in data:
        return LegacyPlaintext(data)
    iv_text, _, ct_text = data.partition(_DELIMITER)
    if not iv_text or not ct_text:
        raise IntegrityError("Encrypted secret has an empty part")
    try:
        return EncryptedSecret(iv=b64decode(iv_text), ciphertext=b64decode(ct_text))
    except MalformedInput as exc:
        raise IntegrityError("Encrypted secret is not valid base64") from exc


class SecretCipher:
    def __init__(self, provider: CryptoProvider | None = None) -> None:
        self.provider = provider or default_provider

    def encrypt(self, plaintext: str, root_secret: str) -> EncryptedSecret:
        _require_root_secret(root_secret)
        if not plaintext:
            raise MalformedInput("Plaintext is required for encryption")
        try:
            data = plaintext.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise MalformedInput("Plaintext is not valid UTF-8") from exc
        key = self._derive_key(root_secret)
        iv = self.provider.random_bytes(_IV_LENGTH)
        return EncryptedSecret(iv=iv, ciphertext=self.provider.aead_encrypt(key, iv, data))

    def decrypt(self, data: str, root_secret: str) -> str:
        _require_root_secret(root_secret)
        if not data:
            raise MalformedInput("Encrypted data is required for decryption")
        stored = parse_stored_secret(data)
        if isinstance(stored, LegacyPlaintext):
            return stored.value
        key = self._derive_key(root_secret)
        plaintext = self.provider.aead_decrypt(key, stored.iv, stored.ciphertext)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise IntegrityError("Decrypted secret is not valid UTF-8") from exc

    def _derive_key(self, root_secret: str) -> bytes:
        _require_root_secret(root_secret)
        return self.provider.derive_key(root_secret.encode("utf-8"), _KDF_SALT, _KDF_INFO, _KEY_LENGTH)


def _require_root_secret(root_secret: str) -> None:
    if not root_secret:
        logger.error("Secret encryption requested without a root secret -- check SECRET_KEY")
        raise ConfigurationError("Root secret is required for secret encryption")


_default_cipher = SecretCipher()


def encrypt_secret(plain: str, root_secret: str) -> str:
    """Encrypt plain for storage. Returns the serialized "iv:ciphertext" value."""
    return _default_cipher.encrypt(plain, root_secret).serialize()


def decrypt_secret(stored: str, root_secret: str) -> str:
    """Decrypt a value produced by encrypt_secret(); legacy plaintext passes through."""
    return _default_cipher.decrypt(stored, root_secret)
