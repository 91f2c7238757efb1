"""Persistent records shared by the custody components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional


class TransactionStatus(str, Enum):
    """Lifecycle status for a transaction intent."""

    pending = "pending"
    broadcasting = "broadcasting"
    broadcast_pending = "broadcast-pending"
    confirmed = "confirmed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {TransactionStatus.confirmed, TransactionStatus.failed, TransactionStatus.cancelled}
)

ALLOWED_TRANSITIONS: Mapping[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.pending: frozenset(
        {TransactionStatus.failed, TransactionStatus.cancelled, TransactionStatus.broadcasting}
    ),
    TransactionStatus.broadcasting: frozenset(
        {TransactionStatus.broadcast_pending, TransactionStatus.failed}
    ),
    TransactionStatus.broadcast_pending: frozenset(
        {TransactionStatus.confirmed, TransactionStatus.failed}
    ),
    TransactionStatus.confirmed: frozenset(),
    TransactionStatus.failed: frozenset(),
    TransactionStatus.cancelled: frozenset(),
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class TransactionType(str, Enum):
    send = "send"
    receive = "receive"


@dataclass(slots=True)
class UserRecord:
    id: str
    email: str
    kyc_tier: int = 0
    name: Optional[str] = None


@dataclass(slots=True)
class WalletRecord:
    """One custodial wallet per (user, chain); holds only public data and ciphertext."""

    user_id: str
    chain: str
    address: str
    encrypted_seed: str = field(repr=False)
    key_reference: str
    created_at: datetime
    last_accessed_at: Optional[datetime] = None


@dataclass(slots=True)
class TransactionRecord:
    """Database representation of a transaction intent."""

    id: str
    user_id: str
    type: TransactionType
    status: TransactionStatus
    amount: Decimal
    currency: str
    from_address: str
    to_address: str
    confirmation_token: str
    created_at: datetime
    tx_hash: Optional[str] = None
    executed_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def expires_at(self) -> Optional[datetime]:
        raw = self.metadata.get("expires_at")
        if not raw:
            return None
        return datetime.fromisoformat(raw)


@dataclass(slots=True)
class NonceRecord:
    user_id: str
    chain: str
    next_nonce: int
