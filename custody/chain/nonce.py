"""Per-(user, chain) nonce allocation."""

from __future__ import annotations

import logging

from custody.errors import WalletNotFound
from custody.infra.store import CustodyStore
from custody.metrics import record_nonce_allocated

from .client import ChainClient

logger = logging.getLogger(__name__)


class NonceAllocator:
    """Hand out strictly increasing nonces.

    The read-increment-write happens inside one store transaction. The chain
    is only queried when no record exists yet; if two callers race on that
    first use, the store keeps whichever bootstrap value landed first.
    """

    def __init__(self, store: CustodyStore, client: ChainClient) -> None:
        self._store = store
        self._client = client

    async def next_nonce(self, user_id: str, chain: str = "ethereum") -> int:
        source = "store"
        bootstrap = 0
        if self._store.get_nonce(user_id, chain) is None:
            bootstrap = await self._chain_count(user_id, chain)
            source = "chain"
        nonce = self._store.allocate_nonce(user_id, chain, bootstrap)
        record_nonce_allocated(chain, source)
        logger.debug("Allocated nonce %d for %s/%s", nonce, user_id, chain)
        return nonce

    async def reset_nonce(self, user_id: str, chain: str = "ethereum") -> int:
        """Overwrite the stored value with the chain's pending count. Manual repair only."""

        count = await self._chain_count(user_id, chain)
        self._store.set_nonce(user_id, chain, count)
        logger.warning("Nonce for %s/%s reset to %d", user_id, chain, count)
        return count

    async def _chain_count(self, user_id: str, chain: str) -> int:
        wallet = self._store.get_wallet(user_id, chain)
        if wallet is None:
            raise WalletNotFound(f"No {chain} wallet for user")
        return await self._client.get_transaction_count(wallet.address)
