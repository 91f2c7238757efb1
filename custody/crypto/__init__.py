"""
Key custody primitives
Layered seed encryption, key management and HD wallet derivation
"""
from .encryption import LayeredCipher, scrub, secret_bytes
from .kms import KeyManagementService, LocalKeyManagementService, create_kms
from .wallet import GeneratedWallet, SigningKey, WalletGenerator, derive_signing_key, is_valid_address

__all__ = [
    'GeneratedWallet',
    'KeyManagementService',
    'LayeredCipher',
    'LocalKeyManagementService',
    'SigningKey',
    'WalletGenerator',
    'create_kms',
    'derive_signing_key',
    'is_valid_address',
    'scrub',
    'secret_bytes',
]
