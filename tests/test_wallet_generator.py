import pytest

from conftest import TEST_ADDRESS, TEST_MNEMONIC
from custody.crypto.wallet import DERIVATION_PATH, WalletGenerator, derive_signing_key, is_valid_address


def test_known_mnemonic_derives_reference_address():
    key = derive_signing_key(TEST_MNEMONIC)
    assert key.address == TEST_ADDRESS
    assert key.account().address == TEST_ADDRESS
    assert DERIVATION_PATH == "m/44'/60'/0'/0/0"


async def test_generate_round_trip(cipher):
    generator = WalletGenerator(cipher)
    wallet = await generator.generate()

    assert wallet.chain == "ethereum"
    assert wallet.key_reference == cipher.key_reference
    assert is_valid_address(wallet.address)
    assert "encrypted_seed" not in repr(wallet)

    seed = await cipher.decrypt(wallet.encrypted_seed)
    assert len(bytes(seed).decode().split()) == 24
    with derive_signing_key(seed) as key:
        assert key.address == wallet.address


async def test_each_wallet_is_unique(cipher):
    generator = WalletGenerator(cipher)
    first = await generator.generate()
    second = await generator.generate()
    assert first.address != second.address


def test_derive_rejects_invalid_mnemonic():
    with pytest.raises(ValueError):
        derive_signing_key("abandon abandon abandon")


def test_wiped_key_cannot_sign():
    key = derive_signing_key(TEST_MNEMONIC)
    key.wipe()
    with pytest.raises(ValueError):
        key.account()
    assert TEST_ADDRESS in repr(key)


@pytest.mark.parametrize(
    "value, expected",
    [
        (TEST_ADDRESS, True),
        (TEST_ADDRESS.lower(), True),
        ("0x" + "A" * 40, True),
        (TEST_ADDRESS[2:], False),
        (TEST_ADDRESS + "00", False),
        ("0x" + "g" * 40, False),
        (None, False),
    ],
)
def test_is_valid_address(value, expected):
    assert is_valid_address(value) is expected
