"""
Secret providers for transaction signing.

A secret provider hands out private key material for a (fingerprint,
derivation path, public key) triple. ``XprivSigner`` is the provider backed
by a single in-memory master extended private key; nothing it derives is
ever written anywhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from coincurve import PrivateKey
from coincurve.context import GLOBAL_CONTEXT, Context

from hdwatch.bitcoin import tagged_hash
from hdwatch.wallet.bip32 import CURVE_ORDER, HDKey, mnemonic_to_seed, validate_mnemonic
from hdwatch.wallet.path import DerivationPath

# Process-wide secp256k1 context shared by every signer. It is created once
# at import time, never mutated and never torn down.
SIGNING_CONTEXT: Context = GLOBAL_CONTEXT


class SecretProviderError(Exception):
    pass


class UnknownAccountError(SecretProviderError):
    """The requested key does not belong to this provider's master key."""

    def __init__(self, fingerprint: bytes, pubkey: bytes):
        self.fingerprint = fingerprint
        self.pubkey = pubkey
        super().__init__(
            f"Unknown account: fingerprint {fingerprint.hex()} for public key {pubkey.hex()}"
        )


@dataclass(frozen=True)
class KeyPair:
    """
    Secret key together with its BIP340 (x-only) public key.

    The x-only form drops the Y coordinate; ``parity`` records whether the
    full point has odd Y. Schnorr signing negates the secret internally when
    needed, so signatures always verify against ``xonly_public_key``.
    """

    private_key: PrivateKey = field(repr=False)

    @classmethod
    def from_secret_key(cls, secret_key: PrivateKey) -> KeyPair:
        return cls(secret_key)

    @property
    def public_key(self) -> bytes:
        return self.private_key.public_key.format(compressed=True)

    @property
    def xonly_public_key(self) -> bytes:
        return self.public_key[1:]

    @property
    def parity(self) -> int:
        return 1 if self.public_key[0] == 0x03 else 0

    def sign_schnorr(self, message: bytes, aux_randomness: bytes = b"") -> bytes:
        """BIP340 signature over a 32-byte message."""
        return self.private_key.sign_schnorr(message, aux_randomness)

    def tap_tweak(self, merkle_root: bytes = b"") -> KeyPair:
        """
        BIP341 key-path key pair for this internal key.

        Args:
            merkle_root: Script tree root, empty for BIP86 (no script path)

        Returns:
            Key pair whose x-only public key is the taproot output key
        """
        secret = int.from_bytes(self.private_key.secret, "big")
        if self.parity:
            secret = CURVE_ORDER - secret
        tweak = int.from_bytes(tagged_hash("TapTweak", self.xonly_public_key + merkle_root), "big")
        if tweak >= CURVE_ORDER:
            raise ValueError("Taproot tweak out of range")
        tweaked = (secret + tweak) % CURVE_ORDER
        return KeyPair(PrivateKey(tweaked.to_bytes(32, "big"), context=SIGNING_CONTEXT))


@runtime_checkable
class SecretProvider(Protocol):
    """Capability to obtain signing keys for wallet inputs."""

    @property
    def secp_context(self) -> Context: ...

    def secret_key(
        self, fingerprint: bytes, derivation: DerivationPath | str, pubkey: bytes
    ) -> PrivateKey: ...

    def key_pair(
        self, fingerprint: bytes, derivation: DerivationPath | str, pubkey: bytes
    ) -> KeyPair: ...

    def supports_key_aggregation(self) -> bool: ...


class XprivSigner:
    """
    Secret provider holding one master extended private key.

    Keys are derived on demand from the master key and returned to the
    caller; the signer keeps no cache. Instances are safe to share between
    threads since the master key is never mutated.
    """

    def __init__(self, xpriv: HDKey, context: Context = SIGNING_CONTEXT):
        self.xpriv = xpriv
        self._context = context
        self._fingerprint = xpriv.fingerprint

    @classmethod
    def from_seed(cls, seed: bytes) -> XprivSigner:
        return cls(HDKey.from_seed(seed))

    @classmethod
    def from_mnemonic(cls, mnemonic: str, passphrase: str = "") -> XprivSigner:
        """
        Build a signer from a BIP39 phrase.

        Raises:
            ValueError: If the phrase fails the BIP39 wordlist or checksum check
        """
        if not validate_mnemonic(mnemonic):
            raise ValueError("Invalid mnemonic: not a valid BIP39 phrase")
        return cls.from_seed(mnemonic_to_seed(mnemonic, passphrase))

    @classmethod
    def from_string(cls, xprv: str) -> XprivSigner:
        return cls(HDKey.from_string(xprv))

    @property
    def fingerprint(self) -> bytes:
        return self._fingerprint

    @property
    def secp_context(self) -> Context:
        return self._context

    def derive_xpriv(
        self, fingerprint: bytes, derivation: DerivationPath | str, pubkey: bytes
    ) -> HDKey:
        """
        Derive the extended private key at ``derivation`` below the master key.

        Raises:
            UnknownAccountError: If ``fingerprint`` is not the master fingerprint
        """
        if fingerprint != self._fingerprint:
            raise UnknownAccountError(fingerprint, pubkey)

        if isinstance(derivation, str):
            derivation = DerivationPath.parse(derivation)

        try:
            return self.xpriv.derive(derivation)
        except ValueError as e:
            # Only reachable with a ~2^-127 invalid child; not a caller error
            raise RuntimeError(f"xpriv derivation failed at {derivation}") from e

    def secret_key(
        self, fingerprint: bytes, derivation: DerivationPath | str, pubkey: bytes
    ) -> PrivateKey:
        """Secret key for ECDSA signing."""
        xpriv = self.derive_xpriv(fingerprint, derivation, pubkey)
        return PrivateKey(xpriv.get_private_key_bytes(), context=self._context)

    def key_pair(
        self, fingerprint: bytes, derivation: DerivationPath | str, pubkey: bytes
    ) -> KeyPair:
        """
        Key pair for BIP340 signing.

        ``pubkey`` may be x-only (32 bytes); it is only used for error reporting,
        where it is lifted to the even-Y compressed form.
        """
        full_pubkey = b"\x02" + pubkey if len(pubkey) == 32 else pubkey
        xpriv = self.derive_xpriv(fingerprint, derivation, full_pubkey)
        secret = PrivateKey(xpriv.get_private_key_bytes(), context=self._context)
        return KeyPair.from_secret_key(secret)

    def supports_key_aggregation(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"XprivSigner(fingerprint={self._fingerprint.hex()})"

