"""
HD key derivation for hdwatch.
"""

from hdwatch.wallet.bip32 import ExtendedPublicKey, HDKey, mnemonic_to_seed, validate_mnemonic
from hdwatch.wallet.path import ChildNumber, DerivationPath

__all__ = [
    "HDKey",
    "ExtendedPublicKey",
    "ChildNumber",
    "DerivationPath",
    "mnemonic_to_seed",
    "validate_mnemonic",
]
