"""On-chain balance reads with caching and explicit invalidation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from custody.config import NetworkConfig
from custody.infra.cache import CacheStore
from custody.metrics import record_balance_read

from .client import NATIVE_SYMBOL, TOKEN_SYMBOL, Asset, ChainClient, supported_assets
from .price_oracle import PriceOracle

logger = logging.getLogger(__name__)

BALANCE_TTL_SECONDS = 300.0
DEGRADED_BALANCE_TTL_SECONDS = 900.0
DEGRADED_AFTER_FAILURES = 3

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class AssetBalance:
    symbol: str
    balance: str
    balance_raw: str
    decimals: int
    usd_value: float

    @property
    def amount(self) -> Decimal:
        return Decimal(self.balance)

    @property
    def raw(self) -> int:
        return int(self.balance_raw)


@dataclass(frozen=True)
class WalletBalances:
    address: str
    native: AssetBalance
    token: AssetBalance
    total_usd: float

    def for_currency(self, symbol: str) -> AssetBalance:
        if symbol.upper() == self.native.symbol:
            return self.native
        if symbol.upper() == self.token.symbol:
            return self.token
        raise KeyError(symbol)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WalletBalances":
        return cls(
            address=data["address"],
            native=AssetBalance(**data["native"]),
            token=AssetBalance(**data["token"]),
            total_usd=float(data["total_usd"]),
        )


def _cache_key(address: str) -> str:
    return f"balance:{address.lower()}"


class BalanceReader:
    """Read ETH and USDC balances and value them in USD.

    A failed read for one asset reports zero for that asset only. Repeated
    upstream failures stretch the cache TTL.
    """

    def __init__(
        self,
        client: ChainClient,
        cache: CacheStore,
        price_oracle: PriceOracle,
        network: NetworkConfig,
    ) -> None:
        self._client = client
        self._cache = cache
        self._price_oracle = price_oracle
        assets = supported_assets(network)
        self._native = assets[NATIVE_SYMBOL]
        self._token = assets[TOKEN_SYMBOL]
        self._consecutive_failures = 0

    @property
    def cache_ttl_seconds(self) -> float:
        if self._consecutive_failures >= DEGRADED_AFTER_FAILURES:
            return DEGRADED_BALANCE_TTL_SECONDS
        return BALANCE_TTL_SECONDS

    async def get_balances(self, address: str) -> WalletBalances:
        cached = await self._cache.get(_cache_key(address))
        if cached is not None:
            record_balance_read("hit")
            return WalletBalances.from_dict(cached)
        record_balance_read("miss")

        native_read, token_read = await asyncio.gather(
            self._read(self._native, address),
            self._read(self._token, address),
        )
        if native_read is None or token_read is None:
            self._consecutive_failures += 1
        else:
            self._consecutive_failures = 0
        native_raw = native_read or 0
        token_raw = token_read or 0
        native_amount = self._native.from_base_units(native_raw)
        token_amount = self._token.from_base_units(token_raw)

        price = await self._price_oracle.get_price_usd() if native_raw else 0.0
        native_usd = (native_amount * Decimal(str(price))).quantize(_CENT)
        token_usd = token_amount.quantize(_CENT)

        balances = WalletBalances(
            address=address,
            native=self._snapshot(self._native, native_raw, float(native_usd)),
            token=self._snapshot(self._token, token_raw, float(token_usd)),
            total_usd=float(native_usd + token_usd),
        )
        await self._cache.set(_cache_key(address), balances.to_dict(), self.cache_ttl_seconds)
        return balances

    async def invalidate(self, address: str) -> None:
        await self._cache.delete(_cache_key(address))
        logger.debug("Invalidated balance cache for %s", address)

    async def _read(self, asset: Asset, address: str) -> Optional[int]:
        """Return the raw balance, or ``None`` when the upstream read failed."""

        try:
            if asset.is_native:
                units = await self._client.get_native_balance(address)
            else:
                units = await self._client.get_token_balance(asset.contract, address)
        except Exception as exc:
            logger.error("Failed to get %s balance for %s: %s", asset.symbol, address, exc)
            return None
        return units

    @staticmethod
    def _snapshot(asset: Asset, units: int, usd_value: float) -> AssetBalance:
        return AssetBalance(
            symbol=asset.symbol,
            balance=format(asset.from_base_units(units).normalize(), "f") if units else "0",
            balance_raw=str(units),
            decimals=asset.decimals,
            usd_value=usd_value,
        )
