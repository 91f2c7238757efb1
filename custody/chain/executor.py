"""Build, sign and broadcast native and token transfers."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict

from eth_utils import to_checksum_address

from custody.config import NetworkConfig
from custody.errors import InsufficientFunds, InvalidAmount, NetworkUnavailable, WalletNotFound
from custody.infra.store import CustodyStore

from .balance import BalanceReader
from .client import ChainClient, encode_transfer, resolve_asset
from .nonce import NonceAllocator
from .price_oracle import PriceOracle
from .signer import BroadcastResult, Signer

logger = logging.getLogger(__name__)

GAS_BUFFER_PERCENT = 120
TOKEN_TRANSFER_GAS = 65_000
NATIVE_TRANSFER_GAS = 21_000
DEFAULT_TOKEN_FEE_USD = Decimal("2.00")
DEFAULT_NATIVE_FEE_USD = Decimal("1.00")

_WEI_PER_ETH = Decimal(10) ** 18
_CENT = Decimal("0.01")


def buffered_gas(estimate: int) -> int:
    return estimate * GAS_BUFFER_PERCENT // 100


class TransactionExecutor:
    """Single-shot transfer primitive; failures propagate and are never retried here."""

    def __init__(
        self,
        store: CustodyStore,
        client: ChainClient,
        signer: Signer,
        nonces: NonceAllocator,
        balances: BalanceReader,
        price_oracle: PriceOracle,
        network: NetworkConfig,
        *,
        chain: str = "ethereum",
    ) -> None:
        self._store = store
        self._client = client
        self._signer = signer
        self._nonces = nonces
        self._balances = balances
        self._price_oracle = price_oracle
        self._network = network
        self._chain = chain

    async def transfer(self, user_id: str, to_address: str, amount: Decimal, currency: str) -> BroadcastResult:
        wallet = self._store.get_wallet(user_id, self._chain)
        if wallet is None:
            raise WalletNotFound("Wallet not found")

        asset = resolve_asset(self._network, currency)
        if amount <= 0:
            raise InvalidAmount("Amount must be positive")
        try:
            units = asset.to_base_units(amount)
        except ValueError as exc:
            raise InvalidAmount(str(exc)) from exc

        if asset.is_native:
            balance = await self._client.get_native_balance(wallet.address)
            tx: Dict[str, Any] = {"to": to_checksum_address(to_address), "value": units}
        else:
            balance = await self._client.get_token_balance(asset.contract, wallet.address)
            tx = {"to": asset.contract, "value": 0, "data": encode_transfer(to_address, units)}
        if balance < units:
            raise InsufficientFunds(f"Insufficient {asset.symbol} balance")

        estimate = await self._client.estimate_gas({**tx, "from": wallet.address})
        gas_price = await self._client.get_gas_price()
        gas_limit = buffered_gas(estimate)
        if asset.is_native and balance < units + gas_limit * gas_price:
            raise InsufficientFunds("Insufficient ETH balance for amount + gas fees")

        nonce = await self._nonces.next_nonce(user_id, self._chain)
        tx.update(gas=gas_limit, gasPrice=gas_price, nonce=nonce, chainId=self._client.chain_id)

        result = await self._signer.sign_and_send(user_id, tx)
        await self._balances.invalidate(wallet.address)
        logger.info(
            "Broadcast %s transfer",
            asset.symbol,
            extra={"tx_hash": result.tx_hash, "nonce": nonce, "from": wallet.address, "to": to_address},
        )
        return result

    async def estimate_fee_usd(self, currency: str) -> Decimal:
        """Typical gas limit times current gas price, valued at the reference price."""

        asset = resolve_asset(self._network, currency)
        gas_limit = NATIVE_TRANSFER_GAS if asset.is_native else TOKEN_TRANSFER_GAS
        try:
            gas_price = await self._client.get_gas_price()
        except NetworkUnavailable as exc:
            logger.warning("Failed to estimate gas cost: %s", exc)
            return DEFAULT_NATIVE_FEE_USD if asset.is_native else DEFAULT_TOKEN_FEE_USD
        price = Decimal(str(await self._price_oracle.get_price_usd()))
        fee_eth = Decimal(gas_limit * gas_price) / _WEI_PER_ETH
        return (fee_eth * price).quantize(_CENT, rounding=ROUND_HALF_UP)
