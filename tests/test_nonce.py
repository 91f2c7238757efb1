import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import TEST_ADDRESS
from custody.chain.nonce import NonceAllocator
from custody.errors import WalletNotFound


async def test_bootstrap_from_pending_count(store, chain, funded_wallet):
    allocator = NonceAllocator(store, chain)

    assert await allocator.next_nonce("alice") == 7
    assert await allocator.next_nonce("alice") == 8
    assert store.get_nonce("alice", "ethereum").next_nonce == 9
    assert chain.calls.count("get_transaction_count") == 1


async def test_concurrent_allocations_are_gapless_and_unique(store, chain, funded_wallet):
    allocator = NonceAllocator(store, chain)

    results = await asyncio.gather(*(allocator.next_nonce("alice") for _ in range(25)))

    assert sorted(results) == list(range(7, 7 + 25))


def test_threaded_allocations_are_gapless_and_unique(store):
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: store.allocate_nonce("bob", "ethereum", 3), range(40)))

    assert sorted(results) == list(range(3, 43))


def test_allocations_are_independent_per_user(store):
    assert store.allocate_nonce("alice", "ethereum", 0) == 0
    assert store.allocate_nonce("bob", "ethereum", 5) == 5
    assert store.allocate_nonce("alice", "ethereum", 99) == 1


async def test_reset_overwrites_with_chain_count(store, chain, funded_wallet):
    allocator = NonceAllocator(store, chain)
    for _ in range(3):
        await allocator.next_nonce("alice")

    chain.tx_counts[TEST_ADDRESS.lower()] = 4
    assert await allocator.reset_nonce("alice") == 4
    assert await allocator.next_nonce("alice") == 4


async def test_missing_wallet(store, chain):
    allocator = NonceAllocator(store, chain)
    with pytest.raises(WalletNotFound):
        await allocator.next_nonce("nobody")
