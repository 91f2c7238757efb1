import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from conftest import RECIPIENT, TEST_ADDRESS
from custody.audit import GuardrailViolation, bootstrap_default_audit_trail
from custody.chain.executor import TransactionExecutor
from custody.chain.nonce import NonceAllocator
from custody.chain.signer import Signer
from custody.config import NETWORKS
from custody.errors import (
    ConfirmationRequired,
    InsufficientFunds,
    InvalidAmount,
    InvalidRecipient,
    LimitExceeded,
    TokenAlreadyConsumed,
    TokenExpired,
    TransactionNotFound,
    TransferFailed,
    UnsupportedCurrency,
)
from custody.models import TransactionStatus, UserRecord, WalletRecord
from custody.transactions import LimitPolicy, RecipientResolver, StatusReconciler, TransactionService


class Clock:
    def __init__(self) -> None:
        self.now = datetime.now(tz=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def engine(store, chain, cipher, balances, oracle):
    network = NETWORKS["sepolia"]
    audit_trail = bootstrap_default_audit_trail()
    signer = Signer(store, cipher, chain, audit_trail=audit_trail)
    executor = TransactionExecutor(
        store, chain, signer, NonceAllocator(store, chain), balances, oracle, network
    )
    clock = Clock()
    service = TransactionService(
        store,
        chain,
        executor,
        balances,
        oracle,
        RecipientResolver(store),
        LimitPolicy(store),
        network,
        audit_trail=audit_trail,
        clock=clock,
    )
    reconciler = StatusReconciler(store, chain, audit_trail=audit_trail)
    return SimpleNamespace(
        service=service, reconciler=reconciler, clock=clock, audit=audit_trail, store=store, chain=chain
    )


async def test_initiate_records_pending_intent_without_broadcasting(engine, funded_wallet):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "usdc")

    assert handle.expires_in_seconds == 600
    assert handle.expires_at - engine.clock.now == timedelta(seconds=600)
    assert handle.currency == "USDC"
    assert handle.total_usd == handle.amount_usd + handle.estimated_fee_usd
    assert handle.requires_second_factor is True
    assert engine.chain.sent == []

    record = engine.store.get_transaction(handle.transaction_id)
    assert record.status is TransactionStatus.pending
    assert record.confirmation_token == handle.confirmation_token
    assert record.amount == Decimal("10")
    assert record.expires_at == handle.expires_at


async def test_full_lifecycle_to_confirmed(engine, funded_wallet):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")

    result = await engine.service.execute("alice", handle.confirmation_token, True)
    assert result.status is TransactionStatus.broadcast_pending
    assert result.explorer_url == f"https://sepolia.etherscan.io/tx/{result.tx_hash}"

    record = engine.store.get_transaction(handle.transaction_id)
    assert record.status is TransactionStatus.broadcast_pending
    assert record.tx_hash == result.tx_hash
    assert record.executed_at is not None
    assert record.metadata["nonce"] == 7

    summary = await engine.reconciler.reconcile_once()
    assert (summary.checked, summary.updated) == (1, 0)

    engine.chain.mine(result.tx_hash, block=98)
    summary = await engine.reconciler.reconcile_once()
    assert (summary.checked, summary.updated, summary.errors) == (1, 1, 0)

    record = engine.store.get_transaction(handle.transaction_id)
    assert record.status is TransactionStatus.confirmed
    assert record.confirmed_at is not None
    assert record.metadata["block_number"] == 98
    assert record.metadata["confirmations"] == 3

    engine.chain.block_number = 110
    view = await engine.service.get_status("alice", handle.transaction_id)
    assert view.confirmations == 13


async def test_second_execution_is_rejected_without_rebroadcast(engine, funded_wallet):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    first = await engine.service.execute("alice", handle.confirmation_token, True)

    with pytest.raises(TokenAlreadyConsumed) as excinfo:
        await engine.service.execute("alice", handle.confirmation_token, True)

    assert excinfo.value.status == "broadcast-pending"
    assert excinfo.value.tx_hash == first.tx_hash
    assert len(engine.chain.sent) == 1


async def test_expired_token_cancels(engine, funded_wallet):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    engine.clock.now += timedelta(minutes=10, seconds=1)

    with pytest.raises(TokenExpired):
        await engine.service.execute("alice", handle.confirmation_token, True)

    record = engine.store.get_transaction(handle.transaction_id)
    assert record.status is TransactionStatus.cancelled
    assert engine.chain.sent == []

    with pytest.raises(TokenAlreadyConsumed):
        await engine.service.execute("alice", handle.confirmation_token, True)


async def test_executor_failure_terminalizes_as_failed(engine, funded_wallet):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    engine.chain.reject_reason = "replacement transaction underpriced"

    with pytest.raises(TransferFailed) as excinfo:
        await engine.service.execute("alice", handle.confirmation_token, True)

    assert excinfo.value.transaction_id == handle.transaction_id
    record = engine.store.get_transaction(handle.transaction_id)
    assert record.status is TransactionStatus.failed
    assert "underpriced" in record.metadata["error"]
    assert record.metadata["error_code"] == "broadcast_rejected"
    assert record.failed_at is not None

    engine.chain.reject_reason = None
    with pytest.raises(TokenAlreadyConsumed):
        await engine.service.execute("alice", handle.confirmation_token, True)
    assert engine.chain.sent == []


async def test_reverted_receipt_marks_failed_and_raises_guardrail(engine, funded_wallet):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    result = await engine.service.execute("alice", handle.confirmation_token, True)
    engine.chain.mine(result.tx_hash, status=0)

    await engine.reconciler.reconcile_once()

    record = engine.store.get_transaction(handle.transaction_id)
    assert record.status is TransactionStatus.failed
    assert record.metadata["stage"] == "onchain"
    violations = [event for event in engine.audit.history if isinstance(event, GuardrailViolation)]
    assert [violation.guardrail_id for violation in violations] == ["onchain-failure"]


async def test_periodic_sweep_until_stopped(engine, funded_wallet):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    result = await engine.service.execute("alice", handle.confirmation_token, True)
    engine.chain.mine(result.tx_hash)

    stop = asyncio.Event()
    task = asyncio.create_task(engine.reconciler.run_periodic(0.01, stop))
    for _ in range(200):
        if engine.store.get_transaction(handle.transaction_id).status is TransactionStatus.confirmed:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert engine.store.get_transaction(handle.transaction_id).status is TransactionStatus.confirmed


async def test_periodic_sweep_survives_store_errors(engine, funded_wallet, monkeypatch):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    result = await engine.service.execute("alice", handle.confirmation_token, True)
    engine.chain.mine(result.tx_hash)

    real_list = engine.store.list_transactions
    attempts = []

    def locked_then_ok(*args, **kwargs):
        attempts.append(1)
        if len(attempts) <= 2:
            raise RuntimeError("database is locked")
        return real_list(*args, **kwargs)

    monkeypatch.setattr(engine.store, "list_transactions", locked_then_ok)

    stop = asyncio.Event()
    task = asyncio.create_task(engine.reconciler.run_periodic(0.01, stop))
    for _ in range(200):
        if engine.store.get_transaction(handle.transaction_id).status is TransactionStatus.confirmed:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert len(attempts) >= 3
    assert engine.store.get_transaction(handle.transaction_id).status is TransactionStatus.confirmed


async def test_reconciler_counts_lookup_errors(engine, funded_wallet):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    await engine.service.execute("alice", handle.confirmation_token, True)
    engine.chain.offline = True

    summary = await engine.reconciler.reconcile_once()

    assert (summary.checked, summary.updated, summary.errors) == (1, 0, 1)
    assert engine.store.get_transaction(handle.transaction_id).status is TransactionStatus.broadcast_pending


async def test_execution_requires_explicit_confirmation(engine, funded_wallet):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    with pytest.raises(ConfirmationRequired):
        await engine.service.execute("alice", handle.confirmation_token, False)
    assert engine.store.get_transaction(handle.transaction_id).status is TransactionStatus.pending


async def test_unknown_or_foreign_token(engine, funded_wallet):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    with pytest.raises(TransactionNotFound):
        await engine.service.execute("alice", "no-such-token", True)
    with pytest.raises(TransactionNotFound):
        await engine.service.execute("mallory", handle.confirmation_token, True)
    with pytest.raises(TransactionNotFound):
        await engine.service.get_status_by_token("mallory", handle.confirmation_token)


async def test_insufficient_funds_at_initiation(engine, funded_wallet):
    with pytest.raises(InsufficientFunds):
        await engine.service.initiate("alice", RECIPIENT, "150", "USDC")

    assert "estimate_gas" not in engine.chain.calls
    assert "send_raw_transaction" not in engine.chain.calls


@pytest.mark.parametrize("amount", ["0", "-1", "1.0000001", "abc"])
async def test_invalid_amounts(engine, funded_wallet, amount):
    with pytest.raises(InvalidAmount):
        await engine.service.initiate("alice", RECIPIENT, amount, "USDC")


async def test_unsupported_currency(engine, funded_wallet):
    with pytest.raises(UnsupportedCurrency):
        await engine.service.initiate("alice", RECIPIENT, "1", "BTC")


async def test_cannot_send_to_self(engine, funded_wallet):
    with pytest.raises(InvalidRecipient):
        await engine.service.initiate("alice", TEST_ADDRESS.lower(), "1", "USDC")


async def test_recipient_by_email(engine, funded_wallet, store):
    store.upsert_user(UserRecord(id="bob", email="Bob@Example.com", name="Bob"))
    store.create_wallet(
        WalletRecord(
            user_id="bob",
            chain="ethereum",
            address=RECIPIENT,
            encrypted_seed="unused",
            key_reference="local/wallet-key",
            created_at=datetime.now(tz=timezone.utc),
        )
    )

    handle = await engine.service.initiate("alice", "bob@example.com", "5", "USDC")

    assert handle.to_address == RECIPIENT
    assert handle.recipient_email == "bob@example.com"
    with pytest.raises(InvalidRecipient):
        await engine.service.initiate("alice", "carol@example.com", "5", "USDC")


async def test_daily_limit_counts_open_transfers(engine, funded_wallet, store):
    store.upsert_user(UserRecord(id="alice", email="alice@example.com", kyc_tier=0))

    await engine.service.initiate("alice", RECIPIENT, "50", "USDC")
    await engine.service.initiate("alice", RECIPIENT, "40", "USDC")
    with pytest.raises(LimitExceeded):
        await engine.service.initiate("alice", RECIPIENT, "20", "USDC")


async def test_eth_amount_is_limited_in_usd(engine, funded_wallet, store):
    store.upsert_user(UserRecord(id="alice", email="alice@example.com", kyc_tier=0))

    with pytest.raises(LimitExceeded):
        await engine.service.initiate("alice", RECIPIENT, "0.1", "ETH")

    handle = await engine.service.initiate("alice", RECIPIENT, "0.01", "ETH")
    assert handle.amount_usd == Decimal("25.00")
    assert handle.requires_second_factor is False


async def test_cancelled_execution_is_terminalized(engine, funded_wallet, monkeypatch):
    handle = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    never = asyncio.Event()

    async def stalled_estimate(tx):
        await never.wait()

    monkeypatch.setattr(engine.chain, "estimate_gas", stalled_estimate)
    task = asyncio.create_task(engine.service.execute("alice", handle.confirmation_token, True))
    for _ in range(100):
        if engine.store.get_transaction(handle.transaction_id).status is TransactionStatus.broadcasting:
            break
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    record = engine.store.get_transaction(handle.transaction_id)
    assert record.status is TransactionStatus.failed
    assert record.metadata["error_code"] == "cancelled"
    assert engine.chain.sent == []


async def test_limit_windows_follow_service_clock(engine, funded_wallet):
    engine.chain.tokens[TEST_ADDRESS.lower()] = 5_000 * 10**6
    engine.clock.now = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)

    await engine.service.initiate("alice", RECIPIENT, "500", "USDC")
    await engine.service.initiate("alice", RECIPIENT, "500", "USDC")
    with pytest.raises(LimitExceeded, match="Daily limit"):
        await engine.service.initiate("alice", RECIPIENT, "1", "USDC")

    engine.clock.now += timedelta(days=1)
    handle = await engine.service.initiate("alice", RECIPIENT, "500", "USDC")
    assert handle.amount_usd == Decimal("500")


async def test_history_links_broadcast_transfers(engine, funded_wallet):
    sent = await engine.service.initiate("alice", RECIPIENT, "10", "USDC")
    result = await engine.service.execute("alice", sent.confirmation_token, True)
    engine.clock.now += timedelta(minutes=1)
    waiting = await engine.service.initiate("alice", RECIPIENT, "5", "USDC")

    page = await engine.service.history("alice", limit=1)
    rest = await engine.service.history("alice", limit=1, offset=1)

    assert (page.total, page.has_more, rest.has_more) == (2, True, False)
    assert page.items[0].record.id == waiting.transaction_id
    assert page.items[0].explorer_url is None
    assert rest.items[0].record.id == sent.transaction_id
    assert rest.items[0].explorer_url == result.explorer_url
