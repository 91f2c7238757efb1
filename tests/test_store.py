from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from custody.models import ALLOWED_TRANSITIONS, TransactionRecord, TransactionStatus, TransactionType, UserRecord


def _record(
    tx_id: str,
    *,
    status=TransactionStatus.pending,
    amount="10",
    usd=None,
    created_at=None,
    user_id="alice",
    type=TransactionType.send,
):
    metadata = {"amount_usd": usd} if usd is not None else {}
    return TransactionRecord(
        id=tx_id,
        user_id=user_id,
        type=type,
        status=status,
        amount=Decimal(amount),
        currency="USDC",
        from_address="0x1",
        to_address="0x2",
        confirmation_token=f"token-{tx_id}",
        created_at=created_at or datetime.now(tz=timezone.utc),
        metadata=metadata,
    )


def test_transition_is_compare_and_set(store):
    store.create_transaction(_record("t1"))

    claimed = store.transition("t1", TransactionStatus.pending, TransactionStatus.broadcasting)
    again = store.transition("t1", TransactionStatus.pending, TransactionStatus.broadcasting)

    assert claimed.status is TransactionStatus.broadcasting
    assert again is None


def test_transition_merges_metadata_and_timestamps(store):
    store.create_transaction(_record("t1", usd="10"))
    now = datetime.now(tz=timezone.utc)

    store.transition("t1", TransactionStatus.pending, TransactionStatus.broadcasting, executed_at=now)
    record = store.transition(
        "t1",
        TransactionStatus.broadcasting,
        TransactionStatus.broadcast_pending,
        tx_hash="0xabc",
        metadata={"nonce": 3},
    )

    assert record.tx_hash == "0xabc"
    assert record.executed_at == now
    assert record.metadata == {"amount_usd": "10", "nonce": 3}


def test_illegal_transition_is_rejected(store):
    store.create_transaction(_record("t1"))

    with pytest.raises(ValueError):
        store.transition("t1", TransactionStatus.pending, TransactionStatus.confirmed)
    with pytest.raises(TypeError):
        store.transition("t1", TransactionStatus.pending, TransactionStatus.cancelled, amount=1)


def test_outgoing_amounts_skip_failed_and_old_records(store):
    today = datetime.now(tz=timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    store.create_transaction(_record("t1", usd="25.00"))
    store.create_transaction(_record("t2", amount="7"))
    store.create_transaction(_record("t3", status=TransactionStatus.cancelled, usd="99"))
    store.create_transaction(_record("t4", usd="40", created_at=today - timedelta(days=1)))

    amounts = store.outgoing_amounts_since("alice", today)

    assert sorted(amounts) == [Decimal("7"), Decimal("25.00")]


def test_user_history_pages_newest_first(store):
    start = datetime(2026, 1, 10, tzinfo=timezone.utc)
    for index in range(5):
        store.create_transaction(_record(f"t{index}", created_at=start + timedelta(minutes=index)))
    store.create_transaction(_record("other", user_id="bob", created_at=start))

    first, total = store.list_transactions_for_user("alice", limit=2, offset=0)
    second, _ = store.list_transactions_for_user("alice", limit=2, offset=2)
    tail, _ = store.list_transactions_for_user("alice", limit=2, offset=4)

    assert total == 5
    assert [record.id for record in first] == ["t4", "t3"]
    assert [record.id for record in second] == ["t2", "t1"]
    assert [record.id for record in tail] == ["t0"]


def test_user_history_filters_by_type(store):
    store.create_transaction(_record("sent"))
    store.create_transaction(_record("received", type=TransactionType.receive))

    records, total = store.list_transactions_for_user("alice", type=TransactionType.receive, limit=10)

    assert total == 1
    assert [record.id for record in records] == ["received"]


def test_nonce_allocation_bootstraps_once(store):
    assert store.allocate_nonce("alice", "ethereum", bootstrap=5) == 5
    assert store.allocate_nonce("alice", "ethereum", bootstrap=99) == 6
    assert store.get_nonce("alice", "ethereum").next_nonce == 7


def test_users_are_looked_up_case_insensitively(store):
    store.upsert_user(UserRecord(id="bob", email="Bob@Example.com", name="Bob"))

    assert store.get_user_by_email("BOB@example.COM").id == "bob"


def test_terminal_statuses_have_no_exits():
    for status in TransactionStatus:
        assert status.is_terminal == (not ALLOWED_TRANSITIONS[status])
