"""Poll receipts for broadcast transactions and record on-chain finality."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from custody.audit import AuditTrail
from custody.chain.client import ChainClient
from custody.infra.store import CustodyStore
from custody.metrics import record_reconcile_error, record_reconciled
from custody.models import TransactionRecord, TransactionStatus

logger = logging.getLogger(__name__)

COMPONENT = "transactions.reconciler"


@dataclass(frozen=True)
class ReconcileSummary:
    checked: int
    updated: int
    errors: int


def confirmations_for(current_block: int, receipt_block: int) -> int:
    return max(0, current_block - receipt_block + 1)


class StatusReconciler:
    """Move ``broadcast-pending`` records to ``confirmed`` or ``failed``.

    A missing receipt leaves the record untouched for a later pass. At most
    ``batch_size`` records are examined per sweep, ``concurrency`` at a time.
    """

    def __init__(
        self,
        store: CustodyStore,
        client: ChainClient,
        *,
        audit_trail: Optional[AuditTrail] = None,
        batch_size: int = 50,
        concurrency: int = 5,
    ) -> None:
        self._store = store
        self._client = client
        self._audit = audit_trail
        self._batch_size = batch_size
        self._concurrency = max(1, concurrency)

    async def reconcile_once(self) -> ReconcileSummary:
        records = self._store.list_transactions(
            TransactionStatus.broadcast_pending, limit=self._batch_size, with_hash=True
        )
        if not records:
            return ReconcileSummary(checked=0, updated=0, errors=0)

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(record: TransactionRecord) -> bool:
            async with semaphore:
                return await self.reconcile_transaction(record)

        outcomes = await asyncio.gather(*(_bounded(record) for record in records), return_exceptions=True)
        updated = 0
        errors = 0
        for record, outcome in zip(records, outcomes):
            if isinstance(outcome, BaseException):
                errors += 1
                record_reconcile_error()
                logger.warning("Failed to reconcile transaction %s: %s", record.id, outcome)
            elif outcome:
                updated += 1
        logger.info("Reconciliation complete: %d checked, %d updated, %d errors", len(records), updated, errors)
        return ReconcileSummary(checked=len(records), updated=updated, errors=errors)

    async def reconcile_transaction(self, record: TransactionRecord) -> bool:
        """Return True if the record reached a terminal state."""

        if record.status is not TransactionStatus.broadcast_pending or not record.tx_hash:
            return False
        receipt = await self._client.get_receipt(record.tx_hash)
        if receipt is None:
            return False

        current_block = await self._client.get_block_number()
        confirmations = confirmations_for(current_block, receipt.block_number)
        now = datetime.now(tz=timezone.utc)
        metadata = {
            "block_number": receipt.block_number,
            "confirmations": confirmations,
            "gas_used": str(receipt.gas_used),
        }
        if receipt.succeeded:
            target = TransactionStatus.confirmed
            updated = self._store.transition(
                record.id, TransactionStatus.broadcast_pending, target, confirmed_at=now, metadata=metadata
            )
        else:
            target = TransactionStatus.failed
            metadata.update(error="Transaction reverted on chain", stage="onchain")
            updated = self._store.transition(
                record.id, TransactionStatus.broadcast_pending, target, failed_at=now, metadata=metadata
            )
        if updated is None:
            return False

        record_reconciled(target.value)
        if self._audit is not None:
            await self._audit.record(
                f"transaction.{target.value}",
                component=COMPONENT,
                actor=record.user_id,
                subject=record.id,
                severity="info" if receipt.succeeded else "error",
                tx_hash=record.tx_hash,
                confirmations=confirmations,
                stage="onchain",
            )
        return True

    async def run_periodic(self, interval_seconds: float, stop: asyncio.Event) -> None:
        """Sweep every ``interval_seconds`` until ``stop`` is set."""

        while not stop.is_set():
            try:
                await self.reconcile_once()
            except Exception:
                record_reconcile_error()
                logger.exception("Reconciliation sweep failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
