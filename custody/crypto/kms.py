"""Key-management service clients for the outer encryption stage."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from custody.config import KMSSettings
from custody.errors import ConfigurationError

logger = logging.getLogger(__name__)

_LOCAL_NONCE_LENGTH = 12


class KMSError(RuntimeError):
    """Raised when the key-management service cannot complete a request."""


class KeyManagementService(Protocol):
    """Remote encrypt/decrypt of opaque byte blobs under a named key."""

    key_reference: str

    async def encrypt(self, plaintext: bytes) -> bytes:
        """Return the ciphertext for ``plaintext``."""

    async def decrypt(self, ciphertext: bytes) -> bytes:
        """Return the plaintext for ``ciphertext``."""


class GoogleCloudKMS(KeyManagementService):
    """Google Cloud KMS symmetric key, called from a worker thread."""

    def __init__(self, client: Any, key_name: str, *, timeout_seconds: float = 10.0) -> None:
        self._client = client
        self.key_reference = key_name
        self._timeout = timeout_seconds

    async def encrypt(self, plaintext: bytes) -> bytes:
        response = await asyncio.to_thread(
            self._client.encrypt,
            request={"name": self.key_reference, "plaintext": bytes(plaintext)},
            timeout=self._timeout,
        )
        if not response.ciphertext:
            raise KMSError("KMS encryption returned no ciphertext")
        return bytes(response.ciphertext)

    async def decrypt(self, ciphertext: bytes) -> bytes:
        response = await asyncio.to_thread(
            self._client.decrypt,
            request={"name": self.key_reference, "ciphertext": bytes(ciphertext)},
            timeout=self._timeout,
        )
        if not response.plaintext:
            raise KMSError("KMS decryption returned no plaintext")
        return bytes(response.plaintext)


class LocalKeyManagementService(KeyManagementService):
    """In-process AES-256-GCM key service for development and tests.

    Output layout is ``nonce || ciphertext || tag``.
    """

    def __init__(self, master_key: bytes, key_reference: str = "local/wallet-key") -> None:
        if len(master_key) != 32:
            raise ConfigurationError("Local KMS key must be 32 bytes")
        self._aead = AESGCM(master_key)
        self.key_reference = key_reference

    async def encrypt(self, plaintext: bytes) -> bytes:
        nonce = os.urandom(_LOCAL_NONCE_LENGTH)
        return nonce + self._aead.encrypt(nonce, bytes(plaintext), self.key_reference.encode())

    async def decrypt(self, ciphertext: bytes) -> bytes:
        if len(ciphertext) <= _LOCAL_NONCE_LENGTH:
            raise KMSError("ciphertext too short")
        nonce, sealed = ciphertext[:_LOCAL_NONCE_LENGTH], ciphertext[_LOCAL_NONCE_LENGTH:]
        try:
            return self._aead.decrypt(nonce, sealed, self.key_reference.encode())
        except InvalidTag as exc:
            raise KMSError("ciphertext failed authentication") from exc


def create_kms(settings: KMSSettings, *, timeout_seconds: float = 10.0) -> KeyManagementService:
    """Build the key-management client selected by ``settings``."""

    if settings.backend == "local":
        if settings.local_key is None:
            raise ConfigurationError("LOCAL_KMS_KEY environment variable not set")
        logger.warning("Using local KMS backend; not for production key custody")
        return LocalKeyManagementService(settings.local_key, settings.key_reference)

    from google.cloud import kms
    from google.oauth2 import service_account

    try:
        info = json.loads(settings.credentials_json or "")
    except json.JSONDecodeError as exc:
        raise ConfigurationError("GOOGLE_APPLICATION_CREDENTIALS_JSON is not valid JSON") from exc

    try:
        credentials = service_account.Credentials.from_service_account_info(info)
    except ValueError as exc:
        raise ConfigurationError("KMS initialization failed") from exc

    client = kms.KeyManagementServiceClient(credentials=credentials)
    logger.info("Using Google Cloud KMS key %s", settings.key_reference)
    return GoogleCloudKMS(client, settings.key_reference, timeout_seconds=timeout_seconds)
