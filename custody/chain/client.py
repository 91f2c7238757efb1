"""Blockchain RPC client and asset definitions for the EVM network."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, TypeVar

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from web3 import HTTPProvider, Web3
from web3.exceptions import TransactionNotFound, Web3RPCError

from custody.config import NetworkConfig
from custody.errors import BroadcastRejected, NetworkUnavailable, UnsupportedCurrency

logger = logging.getLogger(__name__)

T = TypeVar("T")

NATIVE_SYMBOL = "ETH"
TOKEN_SYMBOL = "USDC"

_TRANSFER_SELECTOR = function_signature_to_4byte_selector("transfer(address,uint256)")
_BALANCE_OF_SELECTOR = function_signature_to_4byte_selector("balanceOf(address)")


@dataclass(frozen=True)
class Asset:
    symbol: str
    decimals: int
    contract: Optional[str] = None

    @property
    def is_native(self) -> bool:
        return self.contract is None

    def to_base_units(self, amount: Decimal) -> int:
        scaled = amount.scaleb(self.decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"{self.symbol} amount has more than {self.decimals} decimals")
        return int(scaled)

    def from_base_units(self, units: int) -> Decimal:
        return Decimal(units).scaleb(-self.decimals)


def supported_assets(network: NetworkConfig) -> Dict[str, Asset]:
    return {
        NATIVE_SYMBOL: Asset(NATIVE_SYMBOL, 18),
        TOKEN_SYMBOL: Asset(TOKEN_SYMBOL, 6, to_checksum_address(network.usdc_address)),
    }


def resolve_asset(network: NetworkConfig, symbol: str) -> Asset:
    asset = supported_assets(network).get(symbol.upper())
    if asset is None:
        raise UnsupportedCurrency(f"Unsupported currency: {symbol}")
    return asset


def encode_transfer(to_address: str, units: int) -> str:
    """ABI-encode an ERC-20 ``transfer(address,uint256)`` call."""

    payload = _TRANSFER_SELECTOR + abi_encode(["address", "uint256"], [to_checksum_address(to_address), units])
    return "0x" + payload.hex()


def encode_balance_of(owner: str) -> str:
    payload = _BALANCE_OF_SELECTOR + abi_encode(["address"], [to_checksum_address(owner)])
    return "0x" + payload.hex()


def explorer_tx_url(network: NetworkConfig, tx_hash: str) -> str:
    return f"{network.explorer_url}/tx/{tx_hash}"


def explorer_address_url(network: NetworkConfig, address: str) -> str:
    return f"{network.explorer_url}/address/{address}"


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: int
    block_number: int
    gas_used: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainClient(Protocol):
    """Async view of the JSON-RPC operations the engine needs."""

    chain_id: int

    async def get_block_number(self) -> int: ...

    async def get_native_balance(self, address: str) -> int: ...

    async def get_token_balance(self, token: str, owner: str) -> int: ...

    async def get_transaction_count(self, address: str) -> int: ...

    async def estimate_gas(self, tx: Mapping[str, Any]) -> int: ...

    async def get_gas_price(self) -> int: ...

    async def send_raw_transaction(self, raw: bytes) -> str: ...

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]: ...


class Web3ChainClient(ChainClient):
    """``web3`` HTTP client; blocking calls run in worker threads."""

    def __init__(self, rpc_url: str, chain_id: int, *, timeout_seconds: float = 10.0, w3: Web3 | None = None) -> None:
        self._w3 = w3 or Web3(HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_seconds}))
        self.chain_id = chain_id

    async def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as exc:
            logger.warning("RPC %s failed: %s", operation, exc)
            raise NetworkUnavailable(f"RPC {operation} failed: {exc}") from exc

    async def get_block_number(self) -> int:
        return await self._call("eth_blockNumber", lambda: self._w3.eth.block_number)

    async def get_native_balance(self, address: str) -> int:
        return await self._call("eth_getBalance", self._w3.eth.get_balance, to_checksum_address(address))

    async def get_token_balance(self, token: str, owner: str) -> int:
        call = {"to": to_checksum_address(token), "data": encode_balance_of(owner)}
        raw = await self._call("eth_call", self._w3.eth.call, call)
        (units,) = abi_decode(["uint256"], bytes(raw))
        return int(units)

    async def get_transaction_count(self, address: str) -> int:
        return await self._call(
            "eth_getTransactionCount",
            self._w3.eth.get_transaction_count,
            to_checksum_address(address),
            "pending",
        )

    async def estimate_gas(self, tx: Mapping[str, Any]) -> int:
        return await self._call("eth_estimateGas", self._w3.eth.estimate_gas, dict(tx))

    async def get_gas_price(self) -> int:
        return await self._call("eth_gasPrice", lambda: self._w3.eth.gas_price)

    async def send_raw_transaction(self, raw: bytes) -> str:
        try:
            tx_hash = await asyncio.to_thread(self._w3.eth.send_raw_transaction, raw)
        except Web3RPCError as exc:
            reason = getattr(exc, "message", None) or str(exc)
            logger.warning("Broadcast rejected: %s", reason)
            raise BroadcastRejected(reason) from exc
        except Exception as exc:
            logger.warning("RPC eth_sendRawTransaction failed: %s", exc)
            raise NetworkUnavailable(f"RPC eth_sendRawTransaction failed: {exc}") from exc
        return Web3.to_hex(tx_hash)

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            receipt = await asyncio.to_thread(self._w3.eth.get_transaction_receipt, tx_hash)
        except TransactionNotFound:
            return None
        except Exception as exc:
            logger.warning("RPC eth_getTransactionReceipt failed: %s", exc)
            raise NetworkUnavailable(f"RPC eth_getTransactionReceipt failed: {exc}") from exc
        return Receipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
        )
