"""Two-phase transfer lifecycle: initiate with a token, then execute once."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, List, Optional, Union
from uuid import uuid4

from custody.audit import AuditTrail
from custody.chain.balance import BalanceReader
from custody.chain.client import ChainClient, explorer_tx_url, resolve_asset
from custody.chain.executor import TransactionExecutor
from custody.chain.price_oracle import PriceOracle
from custody.config import NetworkConfig
from custody.errors import (
    ConfirmationRequired,
    CustodyError,
    InsufficientFunds,
    InvalidAmount,
    NetworkUnavailable,
    TokenAlreadyConsumed,
    TokenExpired,
    TransactionNotFound,
    TransferFailed,
    WalletNotFound,
)
from custody.infra.store import CustodyStore
from custody.metrics import record_transfer
from custody.models import TransactionRecord, TransactionStatus, TransactionType

from .limits import LimitPolicy
from .recipients import RecipientResolver

logger = logging.getLogger(__name__)

COMPONENT = "transactions.service"
CONFIRMATION_TTL = timedelta(minutes=10)
MAX_FRACTION_DIGITS = 6
HISTORY_PAGE_SIZE = 50
HISTORY_PAGE_MAX = 100

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class ConfirmationHandle:
    transaction_id: str
    confirmation_token: str
    expires_at: datetime
    expires_in_seconds: int
    from_address: str
    to_address: str
    amount: Decimal
    currency: str
    amount_usd: Decimal
    estimated_fee_usd: Decimal
    total_usd: Decimal
    requires_second_factor: bool
    recipient_email: Optional[str] = None


@dataclass(frozen=True)
class ExecutionResult:
    transaction_id: str
    status: TransactionStatus
    tx_hash: str
    explorer_url: str
    nonce: int
    gas_price: int
    gas_limit: int


@dataclass(frozen=True)
class TransactionView:
    record: TransactionRecord
    confirmations: Optional[int]
    explorer_url: Optional[str]


@dataclass(frozen=True)
class TransactionPage:
    items: List[TransactionView]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


def parse_amount(value: Union[str, int, float, Decimal]) -> Decimal:
    """Parse a positive amount with at most six fractional digits."""

    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise InvalidAmount("Amount is not a number") from exc
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount("Amount must be positive")
    exponent = amount.normalize().as_tuple().exponent
    if isinstance(exponent, int) and -exponent > MAX_FRACTION_DIGITS:
        raise InvalidAmount(f"Amount must have at most {MAX_FRACTION_DIGITS} decimal places")
    return amount


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class TransactionService:
    """Owns every status change of a transaction record except on-chain finality.

    Each transition is a compare-and-set on the current status, so two
    concurrent executions of one token can never both reach the executor.
    """

    def __init__(
        self,
        store: CustodyStore,
        client: ChainClient,
        executor: TransactionExecutor,
        balances: BalanceReader,
        price_oracle: PriceOracle,
        resolver: RecipientResolver,
        limits: LimitPolicy,
        network: NetworkConfig,
        *,
        audit_trail: Optional[AuditTrail] = None,
        chain: str = "ethereum",
        confirmation_ttl: timedelta = CONFIRMATION_TTL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._client = client
        self._executor = executor
        self._balances = balances
        self._price_oracle = price_oracle
        self._resolver = resolver
        self._limits = limits
        self._network = network
        self._audit = audit_trail
        self._chain = chain
        self._confirmation_ttl = confirmation_ttl
        self._clock = clock

    async def initiate(
        self, user_id: str, recipient: str, amount: Union[str, Decimal], currency: str
    ) -> ConfirmationHandle:
        """Record a pending intent and return its confirmation handle. Never broadcasts."""

        asset = resolve_asset(self._network, currency)
        value = parse_amount(amount)

        wallet = self._store.get_wallet(user_id, self._chain)
        if wallet is None:
            raise WalletNotFound("No wallet found. Please create a wallet first.")
        resolved = self._resolver.resolve(recipient, wallet.address)

        balances = await self._balances.get_balances(wallet.address)
        available = balances.for_currency(asset.symbol).amount
        if available < value:
            raise InsufficientFunds(
                f"Insufficient balance. You have {available} {asset.symbol}, but need {value} {asset.symbol}."
            )

        if asset.is_native:
            price = Decimal(str(await self._price_oracle.get_price_usd()))
            amount_usd = (value * price).quantize(_CENT)
        else:
            amount_usd = value
        check = self._limits.check(user_id, amount_usd, now=self._clock())
        fee = await self._executor.estimate_fee_usd(asset.symbol)

        now = self._clock()
        expires_at = now + self._confirmation_ttl
        record = TransactionRecord(
            id=uuid4().hex,
            user_id=user_id,
            type=TransactionType.send,
            status=TransactionStatus.pending,
            amount=value,
            currency=asset.symbol,
            from_address=wallet.address,
            to_address=resolved.address,
            confirmation_token=secrets.token_urlsafe(32),
            created_at=now,
            metadata={
                "expires_at": expires_at.isoformat(),
                "amount_usd": str(amount_usd),
                "estimated_fee_usd": str(fee),
                "requires_second_factor": check.requires_second_factor,
                "recipient_email": resolved.email,
                "recipient_name": resolved.name,
            },
        )
        self._store.create_transaction(record)
        await self._record(
            "transaction.initiated",
            user_id,
            record.id,
            to=record.to_address,
            amount=str(value),
            currency=asset.symbol,
        )
        return ConfirmationHandle(
            transaction_id=record.id,
            confirmation_token=record.confirmation_token,
            expires_at=expires_at,
            expires_in_seconds=int(self._confirmation_ttl.total_seconds()),
            from_address=wallet.address,
            to_address=resolved.address,
            amount=value,
            currency=asset.symbol,
            amount_usd=amount_usd,
            estimated_fee_usd=fee,
            total_usd=amount_usd + fee,
            requires_second_factor=check.requires_second_factor,
            recipient_email=resolved.email,
        )

    async def execute(self, user_id: str, confirmation_token: str, confirmed: bool) -> ExecutionResult:
        if not confirmed:
            raise ConfirmationRequired("Transfer must be explicitly confirmed")

        record = self._store.get_transaction_by_token(confirmation_token)
        if record is None or record.user_id != user_id:
            raise TransactionNotFound("Transaction not found")
        if record.status is not TransactionStatus.pending:
            raise TokenAlreadyConsumed(record.status.value, record.tx_hash)

        now = self._clock()
        expires_at = record.expires_at
        if expires_at is not None and now >= expires_at:
            cancelled = self._store.transition(
                record.id,
                TransactionStatus.pending,
                TransactionStatus.cancelled,
                metadata={"cancelled_reason": "confirmation token expired", "cancelled_at": now.isoformat()},
            )
            if cancelled is None:
                raise self._already_consumed(record.id)
            await self._record("transaction.expired", user_id, record.id)
            raise TokenExpired("Confirmation token has expired")

        claimed = self._store.transition(
            record.id, TransactionStatus.pending, TransactionStatus.broadcasting, executed_at=now
        )
        if claimed is None:
            raise self._already_consumed(record.id)

        started = time.perf_counter()
        try:
            result = await self._executor.transfer(user_id, record.to_address, record.amount, record.currency)
        except Exception as exc:
            cause = str(exc) if isinstance(exc, CustodyError) else "Failed to execute transfer"
            self._store.transition(
                record.id,
                TransactionStatus.broadcasting,
                TransactionStatus.failed,
                failed_at=self._clock(),
                metadata={
                    "error": cause,
                    "error_code": getattr(exc, "code", "internal_error"),
                    "stage": "execution",
                },
            )
            record_transfer(record.currency, "failed", time.perf_counter() - started)
            logger.error("Transfer %s failed: %s", record.id, cause)
            await self._record(
                "transaction.failed", user_id, record.id, severity="error", stage="execution", error=cause
            )
            raise TransferFailed(record.id, cause) from exc
        except asyncio.CancelledError:
            self._store.transition(
                record.id,
                TransactionStatus.broadcasting,
                TransactionStatus.failed,
                failed_at=self._clock(),
                metadata={
                    "error": "Execution cancelled before the broadcast was recorded",
                    "error_code": "cancelled",
                    "stage": "execution",
                },
            )
            record_transfer(record.currency, "cancelled", time.perf_counter() - started)
            logger.warning("Transfer %s cancelled during execution", record.id)
            raise

        self._store.transition(
            record.id,
            TransactionStatus.broadcasting,
            TransactionStatus.broadcast_pending,
            tx_hash=result.tx_hash,
            metadata={"nonce": result.nonce, "gas_price": str(result.gas_price), "gas_limit": result.gas_limit},
        )
        record_transfer(record.currency, "broadcast", time.perf_counter() - started)
        await self._record("transaction.broadcast", user_id, record.id, tx_hash=result.tx_hash, nonce=result.nonce)
        return ExecutionResult(
            transaction_id=record.id,
            status=TransactionStatus.broadcast_pending,
            tx_hash=result.tx_hash,
            explorer_url=explorer_tx_url(self._network, result.tx_hash),
            nonce=result.nonce,
            gas_price=result.gas_price,
            gas_limit=result.gas_limit,
        )

    async def get_status(self, user_id: str, transaction_id: str) -> TransactionView:
        record = self._store.get_transaction(transaction_id)
        if record is None or record.user_id != user_id:
            raise TransactionNotFound("Transaction not found")
        return await self._view(record)

    async def get_status_by_token(self, user_id: str, confirmation_token: str) -> TransactionView:
        record = self._store.get_transaction_by_token(confirmation_token)
        if record is None or record.user_id != user_id:
            raise TransactionNotFound("Transaction not found")
        return await self._view(record)

    async def history(
        self,
        user_id: str,
        *,
        type: Optional[TransactionType] = None,
        limit: int = HISTORY_PAGE_SIZE,
        offset: int = 0,
    ) -> TransactionPage:
        """Return the caller's records newest first, optionally narrowed to one transaction type.

        Confirmation counts come from the stored metadata; paging through
        history never queries the chain.
        """

        records, total = self._store.list_transactions_for_user(
            user_id, type=type, limit=limit, offset=offset
        )
        items = [
            TransactionView(
                record=record,
                confirmations=record.metadata.get("confirmations"),
                explorer_url=explorer_tx_url(self._network, record.tx_hash) if record.tx_hash else None,
            )
            for record in records
        ]
        return TransactionPage(items=items, total=total, limit=limit, offset=offset)

    async def _view(self, record: TransactionRecord) -> TransactionView:
        confirmations = record.metadata.get("confirmations")
        block_number = record.metadata.get("block_number")
        if block_number is not None:
            try:
                current = await self._client.get_block_number()
            except NetworkUnavailable:
                logger.warning("Using stored confirmations for %s", record.id)
            else:
                confirmations = current - int(block_number) + 1
        explorer = explorer_tx_url(self._network, record.tx_hash) if record.tx_hash else None
        return TransactionView(record=record, confirmations=confirmations, explorer_url=explorer)

    def _already_consumed(self, transaction_id: str) -> TokenAlreadyConsumed:
        current = self._store.get_transaction(transaction_id)
        if current is None:
            raise TransactionNotFound("Transaction not found")
        return TokenAlreadyConsumed(current.status.value, current.tx_hash)

    async def _record(
        self, name: str, user_id: str, transaction_id: str, *, severity: str = "info", **payload: Any
    ) -> None:
        if self._audit is None:
            return
        await self._audit.record(
            name, component=COMPONENT, actor=user_id, subject=transaction_id, severity=severity, **payload
        )
