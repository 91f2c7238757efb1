"""EVM chain access: RPC client, pricing, balances, nonces, signing and transfers."""

from .balance import BalanceReader, WalletBalances
from .client import ChainClient, Receipt, Web3ChainClient
from .executor import TransactionExecutor
from .nonce import NonceAllocator
from .price_oracle import PriceOracle
from .signer import BroadcastResult, Signer

__all__ = [
    "BalanceReader",
    "BroadcastResult",
    "ChainClient",
    "NonceAllocator",
    "PriceOracle",
    "Receipt",
    "Signer",
    "TransactionExecutor",
    "WalletBalances",
    "Web3ChainClient",
]
