"""
Bitcoin utilities for hdwatch.

This module provides the Bitcoin primitives the signer and the watcher share:
- Hash functions (hash160, sha256, hash256, tagged hashes)
- Address <-> scriptPubKey conversion (bech32, bech32m, base58)
- Electrum script hashes
- Block header decoding

Uses external libraries for security-critical operations:
- bech32: BIP173 encoding, plus the polymod primitives behind bech32m (BIP350)
- base58: Base58Check encoding
"""

from __future__ import annotations

import hashlib
import struct
from enum import Enum

import base58
import bech32 as bech32_lib


class NetworkType(str, Enum):
    """Bitcoin network types."""

    MAINNET = "mainnet"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @property
    def is_testnet(self) -> bool:
        return self is not NetworkType.MAINNET


# Network prefixes for address encoding
HRP_MAP = {
    NetworkType.MAINNET: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.SIGNET: "tb",
    NetworkType.REGTEST: "bcrt",
}

# Base58 version bytes
P2PKH_VERSION = {
    NetworkType.MAINNET: 0x00,
    NetworkType.TESTNET: 0x6F,
    NetworkType.SIGNET: 0x6F,
    NetworkType.REGTEST: 0x6F,
}

P2SH_VERSION = {
    NetworkType.MAINNET: 0x05,
    NetworkType.TESTNET: 0xC4,
    NetworkType.SIGNET: 0xC4,
    NetworkType.REGTEST: 0xC4,
}

SATS_PER_BTC = 100_000_000


# =============================================================================
# Hash Functions
# =============================================================================


def hash160(data: bytes) -> bytes:
    """
    RIPEMD160(SHA256(data)) - Used for Bitcoin addresses and key fingerprints.

    Args:
        data: Input data to hash

    Returns:
        20-byte hash
    """
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


def hash256(data: bytes) -> bytes:
    """
    SHA256(SHA256(data)) - Used for Bitcoin txids and block hashes.

    Args:
        data: Input data to hash

    Returns:
        32-byte hash
    """
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def sha256(data: bytes) -> bytes:
    """Single SHA256 hash."""
    return hashlib.sha256(data).digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data)."""
    tag_digest = sha256(tag.encode("utf-8"))
    return sha256(tag_digest + tag_digest + data)


# =============================================================================
# Address Encoding/Decoding
# =============================================================================


# BIP350 checksum constant for witness version 1+ addresses
BECH32M_CONST = 0x2BC830A3


def _bech32m_checksum(hrp: str, data: list[int]) -> list[int]:
    values = bech32_lib.bech32_hrp_expand(hrp) + data
    polymod = bech32_lib.bech32_polymod(values + [0] * 6) ^ BECH32M_CONST
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def encode_segwit_address(hrp: str, witver: int, witprog: bytes) -> str:
    """
    Encode a witness program as a bech32 (v0) or bech32m (v1+) address.

    The bech32 package only implements the BIP173 checksum, so v1+ programs
    get their BIP350 checksum computed here from its polymod primitives.
    """
    if witver == 0:
        result = bech32_lib.encode(hrp, 0, witprog)
        if result is None:
            raise ValueError(f"Failed to encode segwit v0 program: {witprog.hex()}")
        return result

    data = [witver] + bech32_lib.convertbits(witprog, 8, 5)
    checksum = _bech32m_checksum(hrp, data)
    return hrp + "1" + "".join(bech32_lib.CHARSET[d] for d in data + checksum)


def decode_segwit_address(hrp: str, address: str) -> tuple[int, bytes]:
    """
    Decode a segwit address into (witness version, program).

    Raises:
        ValueError: On a bad checksum, wrong HRP or invalid program
    """
    witver, witprog = bech32_lib.decode(hrp, address)
    if witver == 0 and witprog is not None:
        return witver, bytes(witprog)

    if address.lower() != address and address.upper() != address:
        raise ValueError(f"Mixed-case bech32 address: {address}")
    address = address.lower()
    pos = address.rfind("1")
    if address[:pos] != hrp or pos + 7 > len(address) or len(address) > 90:
        raise ValueError(f"Invalid bech32 address: {address}")
    if any(c not in bech32_lib.CHARSET for c in address[pos + 1 :]):
        raise ValueError(f"Invalid bech32 character in address: {address}")

    data = [bech32_lib.CHARSET.find(c) for c in address[pos + 1 :]]
    if bech32_lib.bech32_polymod(bech32_lib.bech32_hrp_expand(hrp) + data) != BECH32M_CONST:
        raise ValueError(f"Invalid bech32m checksum: {address}")

    witver = data[0]
    decoded = bech32_lib.convertbits(data[1:-6], 5, 8, False)
    if witver < 1 or witver > 16 or decoded is None or not 2 <= len(decoded) <= 40:
        raise ValueError(f"Invalid witness program in address: {address}")
    return witver, bytes(decoded)


def get_hrp(network: str | NetworkType) -> str:
    """
    Get bech32 human-readable part for network.

    Args:
        network: Network type (string or enum)

    Returns:
        HRP string (bc, tb, bcrt)
    """
    if isinstance(network, str):
        network = NetworkType(network)
    return HRP_MAP[network]


def pubkey_to_p2wpkh_script(pubkey: bytes | str) -> bytes:
    """
    Create P2WPKH scriptPubKey from public key.

    Args:
        pubkey: 33-byte compressed public key (bytes or hex string)

    Returns:
        22-byte P2WPKH scriptPubKey (OP_0 <20-byte-hash>)
    """
    if isinstance(pubkey, str):
        pubkey = bytes.fromhex(pubkey)

    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")

    return bytes([0x00, 0x14]) + hash160(pubkey)


def pubkey_to_p2pkh_script(pubkey: bytes | str) -> bytes:
    """
    Create P2PKH scriptPubKey from public key.

    Returns:
        25-byte script: OP_DUP OP_HASH160 <20-byte-hash> OP_EQUALVERIFY OP_CHECKSIG
    """
    if isinstance(pubkey, str):
        pubkey = bytes.fromhex(pubkey)

    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")

    return bytes([0x76, 0xA9, 0x14]) + hash160(pubkey) + bytes([0x88, 0xAC])


def xonly_to_p2tr_script(output_key: bytes) -> bytes:
    """
    Create P2TR scriptPubKey from a (tweaked) x-only output key.

    Returns:
        34-byte script: OP_1 <32-byte-output-key>
    """
    if len(output_key) != 32:
        raise ValueError(f"Invalid x-only key length: {len(output_key)}")
    return bytes([0x51, 0x20]) + output_key


def pubkey_to_p2wpkh_address(pubkey: bytes | str, network: str | NetworkType = "mainnet") -> str:
    """Convert compressed public key to P2WPKH (native SegWit) address."""
    return scriptpubkey_to_address(pubkey_to_p2wpkh_script(pubkey), network)


def address_to_scriptpubkey(address: str) -> bytes:
    """
    Convert Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH (bc1q..., tb1q..., bcrt1q...)
    - P2WSH (bc1q... 62 chars)
    - P2TR (bc1p... taproot)
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)

    Args:
        address: Bitcoin address string

    Returns:
        scriptPubKey bytes
    """
    # Bech32 (SegWit) addresses
    if address.lower().startswith(("bc1", "tb1", "bcrt1")):
        hrp_end = 4 if address.lower().startswith("bcrt") else 2
        hrp = address[:hrp_end].lower()

        witver, witprog = decode_segwit_address(hrp, address)

        if witver == 0:
            if len(witprog) == 20:
                return bytes([0x00, 0x14]) + witprog
            elif len(witprog) == 32:
                return bytes([0x00, 0x20]) + witprog
        elif witver == 1 and len(witprog) == 32:
            return bytes([0x51, 0x20]) + witprog

        raise ValueError(f"Unsupported witness version: {witver}")

    # Base58 addresses (legacy)
    decoded = base58.b58decode_check(address)
    version = decoded[0]
    payload = decoded[1:]

    if version in (0x00, 0x6F):
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    elif version in (0x05, 0xC4):
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Unknown address version: {version}")


def scriptpubkey_to_address(scriptpubkey: bytes, network: str | NetworkType = "mainnet") -> str:
    """
    Convert scriptPubKey to address.

    Supports P2WPKH, P2WSH, P2TR, P2PKH, P2SH.

    Args:
        scriptpubkey: scriptPubKey bytes
        network: Network type

    Returns:
        Bitcoin address string

    Raises:
        ValueError: If the script has no address representation
    """
    if isinstance(network, str):
        network = NetworkType(network)

    hrp = get_hrp(network)

    # P2WPKH / P2WSH
    if (len(scriptpubkey) == 22 and scriptpubkey[:2] == b"\x00\x14") or (
        len(scriptpubkey) == 34 and scriptpubkey[:2] == b"\x00\x20"
    ):
        return encode_segwit_address(hrp, 0, scriptpubkey[2:])

    # P2TR
    if len(scriptpubkey) == 34 and scriptpubkey[:2] == b"\x51\x20":
        return encode_segwit_address(hrp, 1, scriptpubkey[2:])

    # P2PKH
    if (
        len(scriptpubkey) == 25
        and scriptpubkey[:3] == b"\x76\xa9\x14"
        and scriptpubkey[23:] == b"\x88\xac"
    ):
        payload = bytes([P2PKH_VERSION[network]]) + scriptpubkey[3:23]
        return base58.b58encode_check(payload).decode("ascii")

    # P2SH
    if len(scriptpubkey) == 23 and scriptpubkey[:2] == b"\xa9\x14" and scriptpubkey[22] == 0x87:
        payload = bytes([P2SH_VERSION[network]]) + scriptpubkey[2:22]
        return base58.b58encode_check(payload).decode("ascii")

    raise ValueError(f"Unsupported scriptPubKey: {scriptpubkey.hex()}")


# =============================================================================
# Electrum Protocol Helpers
# =============================================================================


def script_to_scripthash(scriptpubkey: bytes) -> str:
    """
    Compute the Electrum protocol script hash for a scriptPubKey.

    The Electrum server indexes outputs by SHA256(script) with the byte order
    reversed, hex encoded.
    """
    return sha256(scriptpubkey)[::-1].hex()


def btc_per_kvb_to_sat_per_vb(rate: float) -> float | None:
    """
    Convert an Electrum fee estimate (BTC per 1000 vbytes) to sat/vB.

    Electrum servers answer -1 when they cannot produce an estimate;
    this returns None in that case.
    """
    if rate < 0:
        return None
    return rate * SATS_PER_BTC / 1000


# =============================================================================
# Block Headers
# =============================================================================

BLOCK_HEADER_SIZE = 80


def block_header_hash(header: bytes) -> str:
    """Block hash (display byte order) for an 80-byte serialized header."""
    if len(header) != BLOCK_HEADER_SIZE:
        raise ValueError(f"Invalid block header length: {len(header)}")
    return hash256(header)[::-1].hex()


def parse_block_header(header: bytes) -> dict[str, int | str]:
    """
    Decode the fields of an 80-byte serialized block header.

    Returns:
        Dict with version, prev_hash, merkle_root, timestamp, bits, nonce
    """
    if len(header) != BLOCK_HEADER_SIZE:
        raise ValueError(f"Invalid block header length: {len(header)}")

    version = struct.unpack("<i", header[0:4])[0]
    timestamp, bits, nonce = struct.unpack("<III", header[68:80])
    return {
        "version": version,
        "prev_hash": header[4:36][::-1].hex(),
        "merkle_root": header[36:68][::-1].hex(),
        "timestamp": timestamp,
        "bits": bits,
        "nonce": nonce,
    }
