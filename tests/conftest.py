import asyncio
import inspect
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import httpx
import pytest
from eth_utils import keccak

from custody.chain.balance import BalanceReader
from custody.chain.client import Receipt
from custody.chain.price_oracle import PriceOracle
from custody.config import NETWORKS, KMSSettings, Settings
from custody.crypto.encryption import LayeredCipher
from custody.crypto.kms import LocalKeyManagementService
from custody.errors import BroadcastRejected, NetworkUnavailable
from custody.infra.cache import TieredCache
from custody.infra.store import SQLiteCustodyStore
from custody.models import UserRecord, WalletRecord

APP_KEY = bytes.fromhex("11" * 32)
KMS_KEY = bytes.fromhex("22" * 32)

TEST_MNEMONIC = " ".join(["abandon"] * 11 + ["about"])
TEST_ADDRESS = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
RECIPIENT = "0x000000000000000000000000000000000000dEaD"
USDC = NETWORKS["sepolia"].usdc_address


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Run async test functions without requiring pytest-asyncio plugin."""

    test_func = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_func):
        loop = asyncio.new_event_loop()
        try:
            argnames = pyfuncitem._fixtureinfo.argnames
            loop.run_until_complete(test_func(**{name: pyfuncitem.funcargs[name] for name in argnames}))
        finally:
            loop.close()
        return True
    return None


@dataclass
class FakeChain:
    """In-process stand-in for the RPC client; records every call by name."""

    chain_id: int = 11155111
    native: Dict[str, int] = field(default_factory=dict)
    tokens: Dict[str, int] = field(default_factory=dict)
    tx_counts: Dict[str, int] = field(default_factory=dict)
    receipts: Dict[str, Receipt] = field(default_factory=dict)
    block_number: int = 100
    gas_estimate: int = 50_000
    gas_price: int = 20 * 10**9
    reject_reason: Optional[str] = None
    offline: bool = False
    token_offline: bool = False
    calls: List[str] = field(default_factory=list)
    sent: List[bytes] = field(default_factory=list)

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if self.offline:
            raise NetworkUnavailable(f"RPC {name} failed: offline")

    async def get_block_number(self) -> int:
        self._enter("get_block_number")
        return self.block_number

    async def get_native_balance(self, address: str) -> int:
        self._enter("get_native_balance")
        return self.native.get(address.lower(), 0)

    async def get_token_balance(self, token: str, owner: str) -> int:
        self._enter("get_token_balance")
        if self.token_offline:
            raise NetworkUnavailable("RPC eth_call failed: offline")
        return self.tokens.get(owner.lower(), 0)

    async def get_transaction_count(self, address: str) -> int:
        self._enter("get_transaction_count")
        return self.tx_counts.get(address.lower(), 0)

    async def estimate_gas(self, tx: Mapping[str, Any]) -> int:
        self._enter("estimate_gas")
        return self.gas_estimate

    async def get_gas_price(self) -> int:
        self._enter("get_gas_price")
        return self.gas_price

    async def send_raw_transaction(self, raw: bytes) -> str:
        self._enter("send_raw_transaction")
        if self.reject_reason:
            raise BroadcastRejected(self.reject_reason)
        self.sent.append(raw)
        return "0x" + keccak(raw).hex()

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        self._enter("get_receipt")
        return self.receipts.get(tx_hash)

    def mine(self, tx_hash: str, *, status: int = 1, block: Optional[int] = None, gas_used: int = 52_000) -> None:
        self.receipts[tx_hash] = Receipt(tx_hash, status, block or self.block_number, gas_used)


def price_transport(price: Any = 2500, calls: Optional[List[httpx.Request]] = None, status_code: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        return httpx.Response(status_code, json={"ethereum": {"usd": price}})

    return httpx.MockTransport(handler)


def make_oracle(transport: httpx.MockTransport, **kwargs) -> PriceOracle:
    kwargs.setdefault("retry_delay_seconds", 0)
    return PriceOracle(http_client_factory=lambda: httpx.AsyncClient(transport=transport), **kwargs)


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        app_encryption_key=APP_KEY,
        kms=KMSSettings(backend="local", local_key=KMS_KEY),
        network=NETWORKS["sepolia"],
        rpc_url="http://rpc.invalid",
        database_path=str(tmp_path / "custody.db"),
        log_level="DEBUG",
    )


@pytest.fixture()
def kms() -> LocalKeyManagementService:
    return LocalKeyManagementService(KMS_KEY)


@pytest.fixture()
def cipher(kms) -> LayeredCipher:
    return LayeredCipher.from_keys(APP_KEY, kms)


@pytest.fixture()
def store(tmp_path):
    store = SQLiteCustodyStore(tmp_path / "custody.db")
    yield store
    store.close()


@pytest.fixture()
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture()
def cache() -> TieredCache:
    return TieredCache(None)


@pytest.fixture()
def oracle() -> PriceOracle:
    return make_oracle(price_transport(2500))


@pytest.fixture()
def balances(chain, cache, oracle) -> BalanceReader:
    return BalanceReader(chain, cache, oracle, NETWORKS["sepolia"])


@pytest.fixture()
def funded_wallet(store, cipher, chain) -> WalletRecord:
    """Store the well-known test mnemonic as user ``alice``'s wallet with 100 USDC and 1 ETH."""

    encrypted = asyncio.run(cipher.encrypt(TEST_MNEMONIC.encode()))
    store.upsert_user(UserRecord(id="alice", email="alice@example.com", kyc_tier=1))
    wallet = store.create_wallet(
        WalletRecord(
            user_id="alice",
            chain="ethereum",
            address=TEST_ADDRESS,
            encrypted_seed=encrypted,
            key_reference=cipher.key_reference,
            created_at=datetime.now(tz=timezone.utc),
        )
    )
    chain.tokens[TEST_ADDRESS.lower()] = 100 * 10**6
    chain.native[TEST_ADDRESS.lower()] = 10**18
    chain.tx_counts[TEST_ADDRESS.lower()] = 7
    return wallet
