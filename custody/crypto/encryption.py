"""Layered encryption of wallet seed phrases.

Stage one seals the plaintext with AES-256-GCM under the application key and
serialises ``{ciphertext, iv, tag}`` as hex in a JSON envelope. Stage two
passes that envelope through the key-management service. The stored blob is
the base64 of the final stage output.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from contextlib import contextmanager
from typing import Iterator, Protocol, Sequence, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from custody.errors import ConfigurationError, DecryptionFailure, EncryptionFailure

from .kms import KeyManagementService

logger = logging.getLogger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16

BytesLike = Union[bytes, bytearray, memoryview]


def scrub(buffer: bytearray) -> None:
    """Overwrite ``buffer`` in place with random bytes twice, then zeros."""

    size = len(buffer)
    if not size:
        return
    buffer[:] = os.urandom(size)
    buffer[:] = os.urandom(size)
    buffer[:] = bytes(size)


@contextmanager
def secret_bytes(data: BytesLike) -> Iterator[bytearray]:
    """Yield a mutable copy of ``data`` that is scrubbed on exit."""

    buffer = bytearray(data)
    try:
        yield buffer
    finally:
        scrub(buffer)


class EncryptionStage(Protocol):
    async def encrypt(self, data: bytes) -> bytes:
        """Seal ``data``."""

    async def decrypt(self, data: bytes) -> bytes:
        """Reverse :meth:`encrypt`."""


class AESGCMStage(EncryptionStage):
    """Authenticated symmetric stage under the locally held application key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ConfigurationError("APP_ENCRYPTION_KEY must be 32 bytes")
        self._aead = AESGCM(bytes(key))

    async def encrypt(self, data: bytes) -> bytes:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, data, None)
        envelope = {
            "ciphertext": sealed[:-TAG_LENGTH].hex(),
            "iv": iv.hex(),
            "tag": sealed[-TAG_LENGTH:].hex(),
        }
        return json.dumps(envelope).encode("utf-8")

    async def decrypt(self, data: bytes) -> bytes:
        envelope = json.loads(data)
        ciphertext = bytes.fromhex(envelope["ciphertext"])
        iv = bytes.fromhex(envelope["iv"])
        tag = bytes.fromhex(envelope["tag"])
        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise ValueError("malformed envelope")
        return self._aead.decrypt(iv, ciphertext + tag, None)


class KMSStage(EncryptionStage):
    """Remote stage delegating to the key-management service."""

    def __init__(self, kms: KeyManagementService) -> None:
        self._kms = kms

    @property
    def key_reference(self) -> str:
        return self._kms.key_reference

    async def encrypt(self, data: bytes) -> bytes:
        return await self._kms.encrypt(data)

    async def decrypt(self, data: bytes) -> bytes:
        return await self._kms.decrypt(data)


class LayeredCipher:
    """Apply ``stages`` in order on encrypt and in reverse on decrypt."""

    def __init__(self, stages: Sequence[EncryptionStage], key_reference: str) -> None:
        if not stages:
            raise ConfigurationError("at least one encryption stage is required")
        self._stages = tuple(stages)
        self.key_reference = key_reference

    @classmethod
    def from_keys(cls, app_key: bytes, kms: KeyManagementService) -> "LayeredCipher":
        return cls([AESGCMStage(app_key), KMSStage(kms)], kms.key_reference)

    @property
    def stage_count(self) -> int:
        return len(self._stages)

    async def encrypt(self, plaintext: BytesLike) -> str:
        data = bytes(plaintext)
        try:
            for stage in self._stages:
                data = await stage.encrypt(data)
        except Exception as exc:
            logger.error("Seed encryption failed: %s", type(exc).__name__)
            raise EncryptionFailure("Failed to encrypt wallet secret") from None
        return base64.b64encode(data).decode("ascii")

    async def decrypt(self, blob: str) -> bytearray:
        """Return the plaintext as a mutable buffer the caller must scrub."""

        try:
            data = base64.b64decode(blob, validate=True)
            for stage in reversed(self._stages):
                data = await stage.decrypt(data)
        except (InvalidTag, ValueError, KeyError, TypeError, binascii.Error) as exc:
            logger.error("Seed decryption failed: %s", type(exc).__name__)
            raise DecryptionFailure("Failed to decrypt wallet secret") from None
        except Exception as exc:
            logger.error("Seed decryption failed: %s", type(exc).__name__)
            raise DecryptionFailure("Key management service unavailable") from None
        return bytearray(data)
