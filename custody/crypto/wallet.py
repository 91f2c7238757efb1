"""HD wallet generation and key derivation."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from bip_utils import (
    Bip39EntropyBitLen,
    Bip39EntropyGenerator,
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip44,
    Bip44Changes,
    Bip44Coins,
)
from eth_account import Account
from eth_account.signers.local import LocalAccount

from custody.errors import WalletGenerationError

from .encryption import LayeredCipher, scrub

logger = logging.getLogger(__name__)

DERIVATION_PATH = "m/44'/60'/0'/0/0"
MNEMONIC_WORDS = 24

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


@dataclass(frozen=True)
class GeneratedWallet:
    address: str
    chain: str
    encrypted_seed: str = field(repr=False)
    key_reference: str


class SigningKey:
    """Private key held in a scrub-able buffer.

    ``account()`` hands a copy to ``eth_account``; the library's own key
    object cannot be wiped, so only the locally held buffers are scrubbed.
    """

    __slots__ = ("_key", "address")

    def __init__(self, key: bytearray, address: str) -> None:
        self._key = key
        self.address = address

    def account(self) -> LocalAccount:
        if not any(self._key):
            raise ValueError("signing key has been wiped")
        return Account.from_key(bytes(self._key))

    def wipe(self) -> None:
        scrub(self._key)

    def __enter__(self) -> "SigningKey":
        return self

    def __exit__(self, *exc_info) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return f"SigningKey(address={self.address!r})"


def is_valid_address(value: object) -> bool:
    """Syntax check only: ``0x`` followed by 40 hex characters."""

    return isinstance(value, str) and bool(_ADDRESS_RE.match(value))


def derive_signing_key(mnemonic: Union[str, bytes, bytearray]) -> SigningKey:
    """Derive the account-0 external key at ``m/44'/60'/0'/0/0``."""

    phrase = mnemonic.decode("utf-8") if isinstance(mnemonic, (bytes, bytearray)) else mnemonic
    if not Bip39MnemonicValidator().IsValid(phrase):
        raise ValueError("invalid mnemonic")

    seed = bytearray(Bip39SeedGenerator(phrase).Generate())
    try:
        node = (
            Bip44.FromSeed(bytes(seed), Bip44Coins.ETHEREUM)
            .Purpose()
            .Coin()
            .Account(0)
            .Change(Bip44Changes.CHAIN_EXT)
            .AddressIndex(0)
        )
        key = bytearray(node.PrivateKey().Raw().ToBytes())
        return SigningKey(key, node.PublicKey().ToAddress())
    finally:
        scrub(seed)


class WalletGenerator:
    """Create a fresh wallet and return only its public data and ciphertext."""

    def __init__(self, cipher: LayeredCipher, chain: str = "ethereum") -> None:
        self._cipher = cipher
        self._chain = chain

    async def generate(self) -> GeneratedWallet:
        entropy = bytearray(Bip39EntropyGenerator(Bip39EntropyBitLen.BIT_LEN_256).Generate())
        phrase_buffer: Optional[bytearray] = None
        signing_key: Optional[SigningKey] = None
        try:
            phrase = Bip39MnemonicGenerator().FromEntropy(bytes(entropy)).ToStr()
            if len(phrase.split()) != MNEMONIC_WORDS or not Bip39MnemonicValidator().IsValid(phrase):
                raise WalletGenerationError("Generated mnemonic failed validation")
            phrase_buffer = bytearray(phrase.encode("utf-8"))
            del phrase

            signing_key = derive_signing_key(phrase_buffer)
            encrypted_seed = await self._cipher.encrypt(phrase_buffer)
            logger.info("Generated wallet", extra={"address": signing_key.address, "chain": self._chain})
            return GeneratedWallet(
                address=signing_key.address,
                chain=self._chain,
                encrypted_seed=encrypted_seed,
                key_reference=self._cipher.key_reference,
            )
        finally:
            scrub(entropy)
            if phrase_buffer is not None:
                scrub(phrase_buffer)
            if signing_key is not None:
                signing_key.wipe()
