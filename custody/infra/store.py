"""Persistence layer for users, wallets, transaction intents and nonces."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Any, List, Mapping, Optional, Protocol, Sequence, Tuple

from custody.errors import NonceConflict
from custody.models import (
    NonceRecord,
    TransactionRecord,
    TransactionStatus,
    TransactionType,
    UserRecord,
    WalletRecord,
    can_transition,
)


class CustodyStore(Protocol):
    """Persistence interface consumed by the custody core."""

    def upsert_user(self, user: UserRecord) -> UserRecord: ...

    def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    def get_user_by_email(self, email: str) -> Optional[UserRecord]: ...

    def create_wallet(self, wallet: WalletRecord) -> WalletRecord:
        """Insert ``wallet`` unless one exists for (user, chain); return the stored row."""

    def get_wallet(self, user_id: str, chain: str) -> Optional[WalletRecord]: ...

    def touch_wallet(self, user_id: str, chain: str, accessed_at: datetime) -> None: ...

    def create_transaction(self, record: TransactionRecord) -> TransactionRecord: ...

    def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]: ...

    def get_transaction_by_token(self, token: str) -> Optional[TransactionRecord]: ...

    def transition(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        target: TransactionStatus,
        **changes: Any,
    ) -> Optional[TransactionRecord]:
        """Compare-and-set the status; return ``None`` if the record was not in ``expected``."""

    def list_transactions(
        self, status: TransactionStatus, *, limit: int, with_hash: bool = False
    ) -> List[TransactionRecord]: ...

    def list_transactions_for_user(
        self,
        user_id: str,
        *,
        type: Optional[TransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[TransactionRecord], int]:
        """Return one page of the user's records, newest first, and the total matching count."""

    def outgoing_amounts_since(self, user_id: str, since: datetime) -> List[Decimal]: ...

    def get_nonce(self, user_id: str, chain: str) -> Optional[NonceRecord]: ...

    def allocate_nonce(self, user_id: str, chain: str, bootstrap: int) -> int:
        """Atomically return the stored next nonce (creating it at ``bootstrap``) and increment it."""

    def set_nonce(self, user_id: str, chain: str, value: int) -> None: ...


_TRANSACTION_COLUMNS = (
    "id, user_id, type, status, amount, currency, from_address, to_address, "
    "confirmation_token, tx_hash, created_at, executed_at, confirmed_at, failed_at, metadata"
)

_TIMESTAMP_FIELDS = ("executed_at", "confirmed_at", "failed_at")


class SQLiteCustodyStore(CustodyStore):
    """SQLite-backed store.

    All writes go through one connection guarded by a lock. Each write unit
    starts with a DML statement, so SQLite takes its RESERVED lock up front
    and concurrent processes sharing the file are serialised as well.
    """

    def __init__(self, db_path: str | Path) -> None:
        target = str(db_path)
        if target != ":memory:":
            path = Path(target)
            if path.parent and not path.parent.exists():
                path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(target, check_same_thread=False, timeout=30)
        self._connection.row_factory = sqlite3.Row
        self._lock = Lock()
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._lock, self._connection:
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    kyc_tier INTEGER NOT NULL DEFAULT 0,
                    name TEXT
                );
                CREATE TABLE IF NOT EXISTS wallets (
                    user_id TEXT NOT NULL,
                    chain TEXT NOT NULL,
                    address TEXT NOT NULL,
                    encrypted_seed TEXT NOT NULL,
                    key_reference TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_accessed_at TEXT,
                    PRIMARY KEY (user_id, chain)
                );
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    from_address TEXT NOT NULL,
                    to_address TEXT NOT NULL,
                    confirmation_token TEXT NOT NULL UNIQUE,
                    tx_hash TEXT,
                    created_at TEXT NOT NULL,
                    executed_at TEXT,
                    confirmed_at TEXT,
                    failed_at TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}'
                );
                CREATE INDEX IF NOT EXISTS ix_transactions_status ON transactions (status);
                CREATE INDEX IF NOT EXISTS ix_transactions_user_created
                    ON transactions (user_id, created_at);
                CREATE TABLE IF NOT EXISTS nonces (
                    user_id TEXT NOT NULL,
                    chain TEXT NOT NULL,
                    next_nonce INTEGER NOT NULL,
                    PRIMARY KEY (user_id, chain)
                );
                """
            )

    # users -----------------------------------------------------------------

    def upsert_user(self, user: UserRecord) -> UserRecord:
        with self._lock, self._connection:
            self._connection.execute(
                """
                INSERT INTO users (id, email, kyc_tier, name) VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET email = excluded.email,
                    kyc_tier = excluded.kyc_tier, name = excluded.name
                """,
                (user.id, user.email.lower(), user.kyc_tier, user.name),
            )
        return UserRecord(id=user.id, email=user.email.lower(), kyc_tier=user.kyc_tier, name=user.name)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        row = self._fetchone(
            "SELECT id, email, kyc_tier, name FROM users WHERE id = ?", (user_id,)
        )
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        row = self._fetchone(
            "SELECT id, email, kyc_tier, name FROM users WHERE email = ?", (email.lower(),)
        )
        return _user_from_row(row) if row else None

    # wallets ---------------------------------------------------------------

    def create_wallet(self, wallet: WalletRecord) -> WalletRecord:
        with self._lock, self._connection:
            self._connection.execute(
                """
                INSERT OR IGNORE INTO wallets (
                    user_id, chain, address, encrypted_seed, key_reference, created_at, last_accessed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    wallet.user_id,
                    wallet.chain,
                    wallet.address,
                    wallet.encrypted_seed,
                    wallet.key_reference,
                    wallet.created_at.isoformat(),
                    _iso(wallet.last_accessed_at),
                ),
            )
        stored = self.get_wallet(wallet.user_id, wallet.chain)
        if stored is None:
            raise RuntimeError(f"wallet for {wallet.user_id}/{wallet.chain} missing after insert")
        return stored

    def get_wallet(self, user_id: str, chain: str) -> Optional[WalletRecord]:
        row = self._fetchone(
            """
            SELECT user_id, chain, address, encrypted_seed, key_reference, created_at, last_accessed_at
            FROM wallets WHERE user_id = ? AND chain = ?
            """,
            (user_id, chain),
        )
        if not row:
            return None
        return WalletRecord(
            user_id=row["user_id"],
            chain=row["chain"],
            address=row["address"],
            encrypted_seed=row["encrypted_seed"],
            key_reference=row["key_reference"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_accessed_at=_parse(row["last_accessed_at"]),
        )

    def touch_wallet(self, user_id: str, chain: str, accessed_at: datetime) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                "UPDATE wallets SET last_accessed_at = ? WHERE user_id = ? AND chain = ?",
                (accessed_at.isoformat(), user_id, chain),
            )

    # transactions ----------------------------------------------------------

    def create_transaction(self, record: TransactionRecord) -> TransactionRecord:
        with self._lock, self._connection:
            self._connection.execute(
                f"INSERT INTO transactions ({_TRANSACTION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.user_id,
                    record.type.value,
                    record.status.value,
                    str(record.amount),
                    record.currency,
                    record.from_address,
                    record.to_address,
                    record.confirmation_token,
                    record.tx_hash,
                    record.created_at.isoformat(),
                    _iso(record.executed_at),
                    _iso(record.confirmed_at),
                    _iso(record.failed_at),
                    json.dumps(record.metadata),
                ),
            )
        return record

    def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        row = self._fetchone(
            f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE id = ?", (transaction_id,)
        )
        return _transaction_from_row(row) if row else None

    def get_transaction_by_token(self, token: str) -> Optional[TransactionRecord]:
        row = self._fetchone(
            f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE confirmation_token = ?", (token,)
        )
        return _transaction_from_row(row) if row else None

    def transition(
        self,
        transaction_id: str,
        expected: TransactionStatus,
        target: TransactionStatus,
        **changes: Any,
    ) -> Optional[TransactionRecord]:
        if not can_transition(expected, target):
            raise ValueError(f"illegal transition {expected.value} -> {target.value}")

        metadata_updates: Mapping[str, Any] = changes.pop("metadata", None) or {}
        assignments = ["status = ?"]
        params: List[Any] = [target.value]
        if "tx_hash" in changes:
            assignments.append("tx_hash = ?")
            params.append(changes.pop("tx_hash"))
        for name in _TIMESTAMP_FIELDS:
            if name in changes:
                assignments.append(f"{name} = ?")
                params.append(_iso(changes.pop(name)))
        if changes:
            raise TypeError(f"unexpected fields: {', '.join(sorted(changes))}")

        with self._lock, self._connection:
            row = self._connection.execute(
                "SELECT metadata FROM transactions WHERE id = ? AND status = ?",
                (transaction_id, expected.value),
            ).fetchone()
            if row is None:
                return None
            metadata = json.loads(row["metadata"] or "{}")
            metadata.update(metadata_updates)
            assignments.append("metadata = ?")
            params.append(json.dumps(metadata, default=str))
            cursor = self._connection.execute(
                f"UPDATE transactions SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                (*params, transaction_id, expected.value),
            )
            if cursor.rowcount == 0:
                return None
        return self.get_transaction(transaction_id)

    def list_transactions(
        self, status: TransactionStatus, *, limit: int, with_hash: bool = False
    ) -> List[TransactionRecord]:
        query = f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE status = ?"
        if with_hash:
            query += " AND tx_hash IS NOT NULL"
        query += " ORDER BY created_at LIMIT ?"
        rows = self._fetchall(query, (status.value, limit))
        return [_transaction_from_row(row) for row in rows]

    def list_transactions_for_user(
        self,
        user_id: str,
        *,
        type: Optional[TransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[TransactionRecord], int]:
        where = "user_id = ?"
        params: List[Any] = [user_id]
        if type is not None:
            where += " AND type = ?"
            params.append(type.value)
        count_row = self._fetchone(f"SELECT COUNT(*) AS total FROM transactions WHERE {where}", params)
        rows = self._fetchall(
            f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE {where} "
            "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (*params, limit, offset),
        )
        total = int(count_row["total"]) if count_row else 0
        return [_transaction_from_row(row) for row in rows], total

    def outgoing_amounts_since(self, user_id: str, since: datetime) -> List[Decimal]:
        rows = self._fetchall(
            """
            SELECT COALESCE(json_extract(metadata, '$.amount_usd'), amount) AS amount_usd
            FROM transactions
            WHERE user_id = ? AND type = ? AND created_at >= ? AND status NOT IN (?, ?)
            """,
            (
                user_id,
                TransactionType.send.value,
                since.isoformat(),
                TransactionStatus.failed.value,
                TransactionStatus.cancelled.value,
            ),
        )
        return [Decimal(str(row["amount_usd"])) for row in rows]

    # nonces ----------------------------------------------------------------

    def get_nonce(self, user_id: str, chain: str) -> Optional[NonceRecord]:
        row = self._fetchone(
            "SELECT user_id, chain, next_nonce FROM nonces WHERE user_id = ? AND chain = ?",
            (user_id, chain),
        )
        if not row:
            return None
        return NonceRecord(user_id=row["user_id"], chain=row["chain"], next_nonce=int(row["next_nonce"]))

    def allocate_nonce(self, user_id: str, chain: str, bootstrap: int) -> int:
        with self._lock, self._connection:
            self._connection.execute(
                "INSERT OR IGNORE INTO nonces (user_id, chain, next_nonce) VALUES (?, ?, ?)",
                (user_id, chain, bootstrap),
            )
            (current,) = self._connection.execute(
                "SELECT next_nonce FROM nonces WHERE user_id = ? AND chain = ?",
                (user_id, chain),
            ).fetchone()
            cursor = self._connection.execute(
                "UPDATE nonces SET next_nonce = ? WHERE user_id = ? AND chain = ? AND next_nonce = ?",
                (int(current) + 1, user_id, chain, current),
            )
            if cursor.rowcount != 1:
                raise NonceConflict(f"nonce {current} for {user_id}/{chain} changed during allocation")
        return int(current)

    def set_nonce(self, user_id: str, chain: str, value: int) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                """
                INSERT INTO nonces (user_id, chain, next_nonce) VALUES (?, ?, ?)
                ON CONFLICT(user_id, chain) DO UPDATE SET next_nonce = excluded.next_nonce
                """,
                (user_id, chain, value),
            )

    def reset(self) -> None:
        with self._lock, self._connection:
            for table in ("transactions", "nonces", "wallets", "users"):
                self._connection.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        self._connection.close()

    def _fetchone(self, query: str, params: Sequence[Any]) -> Optional[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(query, params).fetchone()

    def _fetchall(self, query: str, params: Sequence[Any]) -> List[sqlite3.Row]:
        with self._lock:
            return self._connection.execute(query, params).fetchall()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _user_from_row(row: sqlite3.Row) -> UserRecord:
    return UserRecord(id=row["id"], email=row["email"], kyc_tier=int(row["kyc_tier"]), name=row["name"])


def _transaction_from_row(row: sqlite3.Row) -> TransactionRecord:
    return TransactionRecord(
        id=row["id"],
        user_id=row["user_id"],
        type=TransactionType(row["type"]),
        status=TransactionStatus(row["status"]),
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        from_address=row["from_address"],
        to_address=row["to_address"],
        confirmation_token=row["confirmation_token"],
        tx_hash=row["tx_hash"],
        created_at=datetime.fromisoformat(row["created_at"]),
        executed_at=_parse(row["executed_at"]),
        confirmed_at=_parse(row["confirmed_at"]),
        failed_at=_parse(row["failed_at"]),
        metadata=json.loads(row["metadata"] or "{}"),
    )
