"""Custodial wallet lifecycle: idempotent creation and lookups."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from custody.audit import AuditTrail
from custody.chain.balance import BalanceReader, WalletBalances
from custody.crypto.wallet import WalletGenerator
from custody.errors import WalletNotFound
from custody.infra.store import CustodyStore
from custody.models import UserRecord, WalletRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalletResult:
    wallet: WalletRecord
    created: bool


class WalletService:
    def __init__(
        self,
        store: CustodyStore,
        generator: WalletGenerator,
        balances: BalanceReader,
        *,
        audit_trail: Optional[AuditTrail] = None,
        chain: str = "ethereum",
    ) -> None:
        self._store = store
        self._generator = generator
        self._balances = balances
        self._audit = audit_trail
        self._chain = chain

    def register_user(self, user_id: str, email: str, name: Optional[str] = None) -> UserRecord:
        """Create or update the user row, keeping an existing KYC tier."""

        existing = self._store.get_user(user_id)
        tier = existing.kyc_tier if existing is not None else 0
        return self._store.upsert_user(UserRecord(id=user_id, email=email, kyc_tier=tier, name=name))

    async def create_wallet(self, user_id: str) -> WalletResult:
        """Return the user's wallet, generating one on first request."""

        existing = self._store.get_wallet(user_id, self._chain)
        if existing is not None:
            return WalletResult(existing, created=False)

        generated = await self._generator.generate()
        stored = self._store.create_wallet(
            WalletRecord(
                user_id=user_id,
                chain=self._chain,
                address=generated.address,
                encrypted_seed=generated.encrypted_seed,
                key_reference=generated.key_reference,
                created_at=datetime.now(tz=timezone.utc),
            )
        )
        created = stored.address == generated.address
        if created and self._audit is not None:
            await self._audit.record(
                "wallet.created",
                component="wallets",
                actor=user_id,
                subject=stored.address,
                chain=self._chain,
            )
        return WalletResult(stored, created=created)

    def get_wallet(self, user_id: str) -> WalletRecord:
        wallet = self._store.get_wallet(user_id, self._chain)
        if wallet is None:
            raise WalletNotFound("No wallet found. Please create a wallet first.")
        return wallet

    async def get_balances(self, user_id: str) -> WalletBalances:
        return await self._balances.get_balances(self.get_wallet(user_id).address)
