"""
Credential encryption: encrypt / decrypt individual credential fields at rest.

Uses AES-256-GCM from the ``cryptography`` library. Every call draws a fresh
random salt and IV; the key is derived from the process master secret
(``ENCRYPTION_KEY``) and that salt with PBKDF2-HMAC-SHA512, so the master
secret alone cannot decrypt a blob without the salt stored next to it.

A missing master secret is a fatal configuration error: ``get_cipher()`` is
called at startup and the process refuses to start without it.
"""

import asyncio
import base64
import binascii
import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict, Iterable, Mapping, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from core.exceptions import CryptoError
from schemas.credentials import EncryptedBlob

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 12   # 96-bit GCM nonce
SALT_LENGTH = 64
TAG_LENGTH = 16


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


class CredentialCipher:
    """Authenticated encryption of single credential values."""

    def __init__(self, master_secret: str, iterations: int = 100_000):
        if not master_secret:
            raise CryptoError(
                "ENCRYPTION_KEY is not configured; refusing to handle credentials"
            )
        self._master_secret = master_secret.encode("utf-8")
        self.iterations = iterations

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._master_secret)

    def encrypt(self, value: Any) -> EncryptedBlob:
        """Encrypt any JSON-serialisable value."""
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(salt)

        sealed = AESGCM(key).encrypt(iv, json.dumps(value).encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return EncryptedBlob(
            encrypted=_b64(ciphertext),
            iv=_b64(iv),
            salt=_b64(salt),
            tag=_b64(tag),
        )

    def decrypt(self, blob: Union[EncryptedBlob, Mapping[str, Any]]) -> Any:
        """
        Decrypt a blob produced by ``encrypt``.

        Raises:
            CryptoError: tampered ciphertext/tag/IV/salt, wrong key or malformed blob
        """
        try:
            if not isinstance(blob, EncryptedBlob):
                blob = EncryptedBlob.model_validate(blob)
            ciphertext = _unb64(blob.encrypted)
            iv = _unb64(blob.iv)
            salt = _unb64(blob.salt)
            tag = _unb64(blob.tag)
        except (PydanticValidationError, binascii.Error, ValueError) as e:
            raise CryptoError("Malformed encrypted blob", original_exception=e)

        if len(tag) != TAG_LENGTH or not iv:
            raise CryptoError("Malformed encrypted blob")

        key = self._derive_key(salt)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise CryptoError(
                "Failed to decrypt data: authentication failed", original_exception=e
            )

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CryptoError("Decrypted payload is not valid JSON", original_exception=e)

    def encrypt_fields(self, data: Mapping[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
        """Encrypt the named fields of a mapping; other keys are left untouched."""
        result = dict(data)
        for field in fields:
            if result.get(field):
                result[field] = self.encrypt(result[field]).model_dump()
        return result

    def decrypt_fields(self, data: Mapping[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
        """Decrypt the named fields of a mapping; other keys are left untouched."""
        result = dict(data)
        for field in fields:
            if result.get(field):
                result[field] = self.decrypt(result[field])
        return result

    # Async variants derive keys in a worker thread, off the event loop

    async def encrypt_async(self, value: Any) -> EncryptedBlob:
        return await asyncio.to_thread(self.encrypt, value)

    async def decrypt_async(self, blob: Union[EncryptedBlob, Mapping[str, Any]]) -> Any:
        return await asyncio.to_thread(self.decrypt, blob)

    async def decrypt_fields_async(
        self, data: Mapping[str, Any], fields: Iterable[str]
    ) -> Dict[str, Any]:
        return await asyncio.to_thread(self.decrypt_fields, data, list(fields))


@lru_cache(maxsize=1)
def get_cipher() -> CredentialCipher:
    """Process-wide cipher built from settings."""
    cipher = CredentialCipher(settings.ENCRYPTION_KEY or "", settings.KDF_ITERATIONS)
    logger.info("Credential encryption enabled (AES-256-GCM, PBKDF2-SHA512)")
    return cipher
