"""Resolve a recipient given as an address or a registered user's e-mail."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from eth_utils import to_checksum_address

from custody.crypto.wallet import is_valid_address
from custody.errors import InvalidRecipient
from custody.infra.store import CustodyStore

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class ResolvedRecipient:
    address: str
    email: Optional[str] = None
    name: Optional[str] = None
    is_registered_user: bool = False


def is_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


class RecipientResolver:
    def __init__(self, store: CustodyStore, chain: str = "ethereum") -> None:
        self._store = store
        self._chain = chain

    def resolve(self, recipient: str, sender_address: Optional[str] = None) -> ResolvedRecipient:
        candidate = (recipient or "").strip()
        if is_valid_address(candidate):
            resolved = ResolvedRecipient(address=to_checksum_address(candidate))
        elif is_email(candidate):
            resolved = self._resolve_email(candidate)
        else:
            raise InvalidRecipient(
                "Please enter a valid Ethereum address (starting with 0x) or email address"
            )

        if sender_address and resolved.address.lower() == sender_address.lower():
            raise InvalidRecipient("Cannot send to your own wallet")
        return resolved

    def _resolve_email(self, email: str) -> ResolvedRecipient:
        user = self._store.get_user_by_email(email)
        wallet = self._store.get_wallet(user.id, self._chain) if user is not None else None
        if user is None or wallet is None:
            raise InvalidRecipient(
                f'Email address "{email}" not found. The recipient needs to create a wallet first.'
            )
        return ResolvedRecipient(
            address=to_checksum_address(wallet.address),
            email=user.email,
            name=user.name,
            is_registered_user=True,
        )
