"""
BIP32 HD key derivation.

Private derivation runs on ``cryptography``'s secp256k1 implementation;
watch-only (public) derivation uses coincurve point tweaking.
"""

from __future__ import annotations

import hashlib
import hmac
import unicodedata

import base58
from coincurve import PublicKey
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from mnemonic import Mnemonic

from hdwatch.bitcoin import NetworkType, hash160
from hdwatch.wallet.path import HARDENED_OFFSET, ChildNumber, DerivationPath

CURVE_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

ZERO_FINGERPRINT = b"\x00" * 4

# Extended key version bytes: version -> (network, is_private, script hint)
# Script hints follow SLIP-132: ypub/upub are P2SH-P2WPKH, zpub/vpub are P2WPKH.
VERSION_BYTES: dict[bytes, tuple[NetworkType, bool, str | None]] = {
    bytes.fromhex("0488ADE4"): (NetworkType.MAINNET, True, None),  # xprv
    bytes.fromhex("0488B21E"): (NetworkType.MAINNET, False, None),  # xpub
    bytes.fromhex("04358394"): (NetworkType.TESTNET, True, None),  # tprv
    bytes.fromhex("043587CF"): (NetworkType.TESTNET, False, None),  # tpub
    bytes.fromhex("049D7878"): (NetworkType.MAINNET, True, "sh-wpkh"),  # yprv
    bytes.fromhex("049D7CB2"): (NetworkType.MAINNET, False, "sh-wpkh"),  # ypub
    bytes.fromhex("04B2430C"): (NetworkType.MAINNET, True, "wpkh"),  # zprv
    bytes.fromhex("04B24746"): (NetworkType.MAINNET, False, "wpkh"),  # zpub
    bytes.fromhex("044A4E28"): (NetworkType.TESTNET, True, "sh-wpkh"),  # uprv
    bytes.fromhex("044A5262"): (NetworkType.TESTNET, False, "sh-wpkh"),  # upub
    bytes.fromhex("045F18BC"): (NetworkType.TESTNET, True, "wpkh"),  # vprv
    bytes.fromhex("045F1C31"): (NetworkType.TESTNET, False, "wpkh"),  # vpub
}


def _version_for(network: NetworkType | str, private: bool) -> bytes:
    network = NetworkType(network)
    if network == NetworkType.MAINNET:
        return bytes.fromhex("0488ADE4" if private else "0488B21E")
    return bytes.fromhex("04358394" if private else "043587CF")


def _serialize(
    version: bytes,
    depth: int,
    parent_fingerprint: bytes,
    child_number: int,
    chain_code: bytes,
    key_data: bytes,
) -> str:
    payload = (
        version
        + bytes([depth])
        + parent_fingerprint
        + child_number.to_bytes(4, "big")
        + chain_code
        + key_data
    )
    return base58.b58encode_check(payload).decode("ascii")


def _deserialize(encoded: str) -> tuple[bytes, int, bytes, int, bytes, bytes]:
    try:
        payload = base58.b58decode_check(encoded.strip())
    except ValueError as e:
        raise ValueError(f"Invalid extended key checksum: {e}") from e

    if len(payload) != 78:
        raise ValueError(f"Invalid extended key length: {len(payload)}")

    version = payload[0:4]
    if version not in VERSION_BYTES:
        raise ValueError(f"Unknown extended key version: {version.hex()}")

    depth = payload[4]
    parent_fingerprint = payload[5:9]
    child_number = int.from_bytes(payload[9:13], "big")
    chain_code = payload[13:45]
    key_data = payload[45:78]
    return version, depth, parent_fingerprint, child_number, chain_code, key_data


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 private derivation.
    """

    def __init__(
        self,
        private_key: ec.EllipticCurvePrivateKey,
        chain_code: bytes,
        depth: int = 0,
        parent_fingerprint: bytes = ZERO_FINGERPRINT,
        child_number: int = 0,
    ):
        self.private_key = private_key
        self.public_key = private_key.public_key()
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        if not 16 <= len(seed) <= 64:
            raise ValueError(f"Seed must be 16-64 bytes, got {len(seed)}")

        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        key_int = int.from_bytes(key_bytes, "big")
        if key_int == 0 or key_int >= CURVE_ORDER:
            raise ValueError("Invalid master key derived from seed")

        private_key = ec.derive_private_key(key_int, ec.SECP256K1())
        return cls(private_key, chain_code, depth=0)

    @classmethod
    def from_string(cls, encoded: str) -> HDKey:
        """Parse an xprv/tprv (or SLIP-132 private) extended key."""
        version, depth, parent_fp, child_number, chain_code, key_data = _deserialize(encoded)
        _, is_private, _ = VERSION_BYTES[version]
        if not is_private or key_data[0] != 0:
            raise ValueError("Not an extended private key")

        key_int = int.from_bytes(key_data[1:], "big")
        if key_int == 0 or key_int >= CURVE_ORDER:
            raise ValueError("Extended private key out of range")

        private_key = ec.derive_private_key(key_int, ec.SECP256K1())
        return cls(private_key, chain_code, depth, parent_fp, child_number)

    def derive(self, path: str | DerivationPath) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0")
        ' or h indicates hardened derivation
        """
        if isinstance(path, str):
            if not path.startswith("m"):
                raise ValueError("Path must start with 'm'")
            path = DerivationPath.parse(path)

        key = self
        for step in path:
            key = key._derive_child(step.to_int())
        return key

    def _derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        hardened = index >= HARDENED_OFFSET

        if hardened:
            data = b"\x00" + self.get_private_key_bytes() + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        parent_key_int = self.private_key.private_numbers().private_value
        offset_int = int.from_bytes(key_offset, "big")
        if offset_int >= CURVE_ORDER:
            raise ValueError("Invalid child key")

        child_key_int = (parent_key_int + offset_int) % CURVE_ORDER
        if child_key_int == 0:
            raise ValueError("Invalid child key")

        child_private_key = ec.derive_private_key(child_key_int, ec.SECP256K1())

        return HDKey(
            child_private_key,
            child_chain,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )

    @property
    def identifier(self) -> bytes:
        return hash160(self.get_public_key_bytes())

    @property
    def fingerprint(self) -> bytes:
        """First 4 bytes of HASH160 of the compressed public key."""
        return self.identifier[:4]

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        return self.private_key.private_numbers().private_value.to_bytes(32, "big")

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        if compressed:
            return self.public_key.public_bytes(
                encoding=serialization.Encoding.X962,
                format=serialization.PublicFormat.CompressedPoint,
            )
        else:
            return self.public_key.public_bytes(
                encoding=serialization.Encoding.X962,
                format=serialization.PublicFormat.UncompressedPoint,
            )

    def neuter(self, network: NetworkType | str = NetworkType.MAINNET) -> ExtendedPublicKey:
        """Return the watch-only counterpart of this key."""
        return ExtendedPublicKey(
            public_key=self.get_public_key_bytes(),
            chain_code=self.chain_code,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
            network=NetworkType(network),
        )

    def to_string(self, network: NetworkType | str = NetworkType.MAINNET) -> str:
        """Serialize as xprv (mainnet) or tprv (test networks)."""
        return _serialize(
            _version_for(network, private=True),
            self.depth,
            self.parent_fingerprint,
            self.child_number,
            self.chain_code,
            b"\x00" + self.get_private_key_bytes(),
        )

    def get_xpub(self, network: NetworkType | str = NetworkType.MAINNET) -> str:
        """Serialize the public counterpart as xpub/tpub."""
        return self.neuter(network).to_string()

    def __repr__(self) -> str:
        return f"HDKey(fingerprint={self.fingerprint.hex()}, depth={self.depth})"


class ExtendedPublicKey:
    """Watch-only BIP32 key supporting unhardened derivation."""

    def __init__(
        self,
        public_key: bytes,
        chain_code: bytes,
        depth: int = 0,
        parent_fingerprint: bytes = ZERO_FINGERPRINT,
        child_number: int = 0,
        network: NetworkType = NetworkType.MAINNET,
        script_hint: str | None = None,
    ):
        if len(public_key) != 33:
            raise ValueError(f"Invalid compressed pubkey length: {len(public_key)}")
        if len(chain_code) != 32:
            raise ValueError(f"Invalid chain code length: {len(chain_code)}")

        self.public_key = public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number
        self.network = network
        self.script_hint = script_hint

    @classmethod
    def from_string(cls, encoded: str) -> ExtendedPublicKey:
        """
        Parse an xpub/tpub or SLIP-132 (ypub/zpub/upub/vpub) extended public key.

        The SLIP-132 prefix is kept as ``script_hint``; the key material is the
        same as the plain xpub form.
        """
        version, depth, parent_fp, child_number, chain_code, key_data = _deserialize(encoded)
        network, is_private, script_hint = VERSION_BYTES[version]
        if is_private:
            raise ValueError("Expected an extended public key, got a private one")

        try:
            PublicKey(key_data)
        except ValueError as e:
            raise ValueError(f"Invalid public key in extended key: {e}") from e

        return cls(key_data, chain_code, depth, parent_fp, child_number, network, script_hint)

    def derive(self, path: str | DerivationPath) -> ExtendedPublicKey:
        if isinstance(path, str):
            path = DerivationPath.parse(path)
        if not path.is_unhardened:
            raise ValueError(f"Cannot derive hardened path {path} from a public key")

        key = self
        for step in path:
            key = key.derive_child(step.index)
        return key

    def derive_child(self, index: int | ChildNumber) -> ExtendedPublicKey:
        if isinstance(index, ChildNumber):
            if index.hardened:
                raise ValueError("Cannot derive hardened child from a public key")
            index = index.index
        if not 0 <= index < HARDENED_OFFSET:
            raise ValueError(f"Unhardened child index out of range: {index}")

        data = self.public_key + index.to_bytes(4, "big")
        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]

        if int.from_bytes(key_offset, "big") >= CURVE_ORDER:
            raise ValueError("Invalid child key")

        child_key = PublicKey(self.public_key).add(key_offset)

        return ExtendedPublicKey(
            public_key=child_key.format(compressed=True),
            chain_code=hmac_result[32:],
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
            network=self.network,
        )

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.public_key)[:4]

    def to_string(self, network: NetworkType | str | None = None) -> str:
        """Serialize as xpub (mainnet) or tpub (test networks)."""
        return _serialize(
            _version_for(network or self.network, private=False),
            self.depth,
            self.parent_fingerprint,
            self.child_number,
            self.chain_code,
            self.public_key,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExtendedPublicKey):
            return NotImplemented
        return self.public_key == other.public_key and self.chain_code == other.chain_code

    def __hash__(self) -> int:
        return hash((self.public_key, self.chain_code))

    def __repr__(self) -> str:
        return f"ExtendedPublicKey({self.to_string()})"


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """
    Convert BIP39 mnemonic to seed.
    The mnemonic is not checked against the wordlist.
    """
    mnemonic_bytes = unicodedata.normalize("NFKD", mnemonic).encode("utf-8")
    salt = unicodedata.normalize("NFKD", "mnemonic" + passphrase).encode("utf-8")

    return hashlib.pbkdf2_hmac("sha512", mnemonic_bytes, salt, 2048, dklen=64)


def validate_mnemonic(mnemonic: str) -> bool:
    """Check a phrase against the BIP39 English wordlist and its checksum."""
    return Mnemonic("english").check(" ".join(mnemonic.split()))
