import pytest

from conftest import TEST_ADDRESS, make_oracle, price_transport
from custody.chain.balance import BALANCE_TTL_SECONDS, DEGRADED_BALANCE_TTL_SECONDS, BalanceReader
from custody.config import NETWORKS
from custody.infra.cache import TieredCache

EMPTY = "0x1111111111111111111111111111111111111111"


async def test_new_wallet_reads_zero(balances):
    result = await balances.get_balances(EMPTY)

    assert result.native.balance == "0"
    assert result.token.balance == "0"
    assert result.total_usd == 0


async def test_values_native_at_reference_price_and_token_at_peg(balances, chain, funded_wallet):
    result = await balances.get_balances(TEST_ADDRESS)

    assert result.native.amount == 1
    assert result.native.usd_value == pytest.approx(2500)
    assert result.token.amount == 100
    assert result.token.balance_raw == str(100 * 10**6)
    assert result.token.usd_value == pytest.approx(100)
    assert result.total_usd == pytest.approx(2600)


async def test_cached_until_invalidated(balances, chain, funded_wallet):
    await balances.get_balances(TEST_ADDRESS)
    chain.tokens[TEST_ADDRESS.lower()] = 5 * 10**6
    reads = chain.calls.count("get_token_balance")

    cached = await balances.get_balances(TEST_ADDRESS)
    assert cached.token.amount == 100
    assert chain.calls.count("get_token_balance") == reads

    await balances.invalidate(TEST_ADDRESS)
    fresh = await balances.get_balances(TEST_ADDRESS)
    assert fresh.token.amount == 5


async def test_failed_asset_reads_as_zero(balances, chain, funded_wallet):
    chain.token_offline = True

    result = await balances.get_balances(TEST_ADDRESS)

    assert result.token.balance == "0"
    assert result.native.amount == 1
    assert result.total_usd == pytest.approx(2500)


async def test_bad_price_still_values_balance(chain, funded_wallet):
    reader = BalanceReader(chain, TieredCache(None), make_oracle(price_transport(-1)), NETWORKS["sepolia"])

    result = await reader.get_balances(TEST_ADDRESS)

    assert result.native.usd_value == pytest.approx(2000)
    assert result.total_usd == pytest.approx(2100)


async def test_ttl_extends_after_repeated_read_failures(balances, chain):
    chain.token_offline = True
    for index in range(3):
        await balances.get_balances(f"0x{index:040x}")

    assert balances.cache_ttl_seconds == DEGRADED_BALANCE_TTL_SECONDS


async def test_ttl_resets_after_clean_read(balances, chain):
    chain.token_offline = True
    for index in range(3):
        await balances.get_balances(f"0x{index:040x}")
    chain.token_offline = False

    await balances.get_balances("0x" + "9" * 40)

    assert balances.cache_ttl_seconds == BALANCE_TTL_SECONDS
