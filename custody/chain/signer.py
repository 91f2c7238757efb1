"""Transaction and message signing with custodial keys.

Each operation decrypts the user's seed, derives the key, signs, and scrubs
every locally held secret buffer before returning, on success and failure
alike. ``eth_account`` keeps its own copy of the key inside the account
object; that copy cannot be wiped from here.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Mapping, Optional

from eth_account.messages import encode_defunct

from custody.audit import AuditTrail
from custody.crypto.encryption import LayeredCipher, scrub
from custody.crypto.wallet import SigningKey, derive_signing_key
from custody.errors import CustodyError, DecryptionFailure, SigningFailure, WalletNotFound
from custody.infra.store import CustodyStore

from .client import ChainClient

logger = logging.getLogger(__name__)

COMPONENT = "chain.signer"


@dataclass(frozen=True)
class BroadcastResult:
    tx_hash: str
    nonce: int
    gas_price: int
    gas_limit: int


def _describe(tx: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "to": tx.get("to"),
        "value": str(tx.get("value", 0)),
        "data": "present" if tx.get("data") else "none",
    }


class Signer:
    def __init__(
        self,
        store: CustodyStore,
        cipher: LayeredCipher,
        client: ChainClient,
        *,
        audit_trail: Optional[AuditTrail] = None,
        chain: str = "ethereum",
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._client = client
        self._audit = audit_trail
        self._chain = chain

    async def sign(self, user_id: str, tx: Mapping[str, Any]) -> bytes:
        """Return the raw signed transaction without broadcasting it."""

        await self._record("signer.sign.requested", user_id, **_describe(tx))
        try:
            async with self._signing_key(user_id) as key:
                signed = key.account().sign_transaction(self._prepare(tx))
        except CustodyError as exc:
            await self._record("signer.sign.failed", user_id, severity="error", error=str(exc), error_code=exc.code)
            raise
        await self._record("signer.sign.succeeded", user_id, tx_hash=signed.hash.to_0x_hex())
        return bytes(signed.raw_transaction)

    async def sign_and_send(self, user_id: str, tx: Mapping[str, Any]) -> BroadcastResult:
        await self._record("signer.send.requested", user_id, **_describe(tx))
        try:
            prepared = self._prepare(tx)
            async with self._signing_key(user_id) as key:
                signed = key.account().sign_transaction(prepared)
            tx_hash = await self._client.send_raw_transaction(bytes(signed.raw_transaction))
        except CustodyError as exc:
            await self._record("signer.send.failed", user_id, severity="error", error=str(exc), error_code=exc.code)
            raise
        result = BroadcastResult(
            tx_hash=tx_hash,
            nonce=int(prepared["nonce"]),
            gas_price=int(prepared["gasPrice"]),
            gas_limit=int(prepared["gas"]),
        )
        await self._record("signer.send.succeeded", user_id, tx_hash=tx_hash, nonce=result.nonce)
        return result

    async def sign_message(self, user_id: str, message: str) -> str:
        """EIP-191 personal-sign ``message`` for proof of ownership."""

        await self._record("signer.message.requested", user_id, length=len(message))
        try:
            async with self._signing_key(user_id) as key:
                signed = key.account().sign_message(encode_defunct(text=message))
        except CustodyError as exc:
            await self._record("signer.sign.failed", user_id, severity="error", error=str(exc), error_code=exc.code)
            raise
        await self._record("signer.message.succeeded", user_id)
        return signed.signature.to_0x_hex()

    def _prepare(self, tx: Mapping[str, Any]) -> Dict[str, Any]:
        prepared = dict(tx)
        prepared.setdefault("chainId", self._client.chain_id)
        prepared.setdefault("value", 0)
        for required in ("nonce", "gas", "gasPrice"):
            if required not in prepared:
                raise SigningFailure(f"transaction is missing {required}")
        return prepared

    @asynccontextmanager
    async def _signing_key(self, user_id: str) -> AsyncIterator[SigningKey]:
        wallet = self._store.get_wallet(user_id, self._chain)
        if wallet is None:
            raise WalletNotFound("Wallet not found for user")

        seed: Optional[bytearray] = None
        key: Optional[SigningKey] = None
        try:
            try:
                seed = await self._cipher.decrypt(wallet.encrypted_seed)
            except DecryptionFailure as exc:
                raise SigningFailure("Failed to decrypt wallet secret") from exc
            try:
                key = derive_signing_key(seed)
            except ValueError as exc:
                raise SigningFailure("Stored seed is not a valid mnemonic") from exc
            if key.address.lower() != wallet.address.lower():
                raise SigningFailure("Derived address does not match stored wallet")
            try:
                yield key
            except CustodyError:
                raise
            except Exception as exc:
                logger.error("Signing failed for user %s: %s", user_id, type(exc).__name__)
                raise SigningFailure("Failed to sign transaction") from exc
        finally:
            if seed is not None:
                scrub(seed)
            if key is not None:
                key.wipe()
        self._store.touch_wallet(user_id, self._chain, datetime.now(tz=timezone.utc))

    async def _record(self, name: str, user_id: str, *, severity: str = "info", **payload: Any) -> None:
        if self._audit is None:
            return
        await self._audit.record(
            name, component=COMPONENT, actor=user_id, subject=user_id, severity=severity, **payload
        )
