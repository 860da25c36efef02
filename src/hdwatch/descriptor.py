"""
Wallet descriptors: the mapping from (branch, index) to output scripts.

The watcher only depends on the ``WalletDescriptor`` protocol. The concrete
``SingleSigDescriptor`` covers the single-key templates derived from an
account extended public key:

- pkh:     m/44'/coin'/account'  P2PKH
- sh-wpkh: m/49'/coin'/account'  P2SH-P2WPKH
- wpkh:    m/84'/coin'/account'  P2WPKH
- tr:      m/86'/coin'/account'  P2TR key path with the BIP86 tweak
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Protocol, runtime_checkable

from coincurve import PublicKey
from loguru import logger

from hdwatch.bitcoin import (
    NetworkType,
    hash160,
    pubkey_to_p2pkh_script,
    pubkey_to_p2wpkh_script,
    scriptpubkey_to_address,
    tagged_hash,
    xonly_to_p2tr_script,
)
from hdwatch.wallet.bip32 import CURVE_ORDER, ExtendedPublicKey
from hdwatch.wallet.path import HARDENED_OFFSET, DerivationPath

DEFAULT_ENDPOINT = "ssl://electrum.blockstream.info:50002"


class DescriptorError(Exception):
    """An output script could not be produced for a requested index."""


class ScriptType(str, Enum):
    PKH = "pkh"
    SH_WPKH = "sh-wpkh"
    WPKH = "wpkh"
    TR = "tr"

    @property
    def purpose(self) -> int:
        """BIP44/49/84/86 purpose field of the account path."""
        return {
            ScriptType.PKH: 44,
            ScriptType.SH_WPKH: 49,
            ScriptType.WPKH: 84,
            ScriptType.TR: 86,
        }[self]

    def account_path(self, network: NetworkType | str, account: int = 0) -> DerivationPath:
        coin_type = 0 if NetworkType(network) == NetworkType.MAINNET else 1
        return DerivationPath.parse(f"m/{self.purpose}'/{coin_type}'/{account}'")


@runtime_checkable
class WalletDescriptor(Protocol):
    def network(self) -> NetworkType: ...

    def endpoint(self) -> str: ...

    def script_pubkeys(self, change: bool, indexes: Iterable[int]) -> dict[int, bytes]: ...


def taproot_output_key(pubkey: bytes) -> bytes:
    """
    BIP86 output key: the internal key tweaked with an empty script tree.

    Args:
        pubkey: 33-byte compressed internal public key

    Returns:
        32-byte x-only output key
    """
    internal = pubkey[1:]
    tweak = tagged_hash("TapTweak", internal)
    if int.from_bytes(tweak, "big") >= CURVE_ORDER:
        raise ValueError("Taproot tweak out of range")
    output = PublicKey(b"\x02" + internal).add(tweak)
    return output.format(compressed=True)[1:]


def _script_for(script_type: ScriptType, pubkey: bytes) -> bytes:
    if script_type == ScriptType.PKH:
        return pubkey_to_p2pkh_script(pubkey)
    if script_type == ScriptType.WPKH:
        return pubkey_to_p2wpkh_script(pubkey)
    if script_type == ScriptType.SH_WPKH:
        redeem_script = pubkey_to_p2wpkh_script(pubkey)
        return bytes([0xA9, 0x14]) + hash160(redeem_script) + bytes([0x87])
    return xonly_to_p2tr_script(taproot_output_key(pubkey))


class SingleSigDescriptor:
    """
    Single-key wallet descriptor over an account-level extended public key.

    Branch 0 (change=False) holds receiving addresses, branch 1 (change=True)
    holds change addresses. Indexes are unhardened, so the descriptor is
    exhausted at 2^31.

    Args:
        account_xpub: Account key (xpub/tpub or SLIP-132 ypub/zpub/upub/vpub)
        script_type: Output template. Defaults to the SLIP-132 hint of the key,
            else wpkh.
        network: Target chain. Defaults to the network encoded in the key.
        endpoint: Electrum server address
        origin: Optional (master fingerprint, account path) key origin, used
            only for descriptor rendering
    """

    def __init__(
        self,
        account_xpub: ExtendedPublicKey | str,
        script_type: ScriptType | str | None = None,
        network: NetworkType | str | None = None,
        endpoint: str = DEFAULT_ENDPOINT,
        origin: tuple[bytes, DerivationPath] | None = None,
    ):
        if isinstance(account_xpub, str):
            try:
                account_xpub = ExtendedPublicKey.from_string(account_xpub)
            except (KeyError, ValueError) as e:
                raise DescriptorError(f"Invalid account extended public key: {e}") from e

        if script_type is None:
            script_type = account_xpub.script_hint or ScriptType.WPKH
        try:
            self.script_type = ScriptType(script_type)
        except ValueError as e:
            raise DescriptorError(f"Unsupported script type: {script_type}") from e

        self.account_xpub = account_xpub
        self._network = NetworkType(network) if network is not None else account_xpub.network
        self._endpoint = endpoint
        self.origin = origin
        self._branch_keys: dict[bool, ExtendedPublicKey] = {}

    def network(self) -> NetworkType:
        return self._network

    def endpoint(self) -> str:
        return self._endpoint

    def _branch_key(self, change: bool) -> ExtendedPublicKey:
        key = self._branch_keys.get(change)
        if key is None:
            key = self.account_xpub.derive_child(1 if change else 0)
            self._branch_keys[change] = key
        return key

    def script_pubkeys(self, change: bool, indexes: Iterable[int]) -> dict[int, bytes]:
        """
        Output scripts for ``indexes`` on one branch, in index order.

        Raises:
            DescriptorError: If an index lies outside the unhardened range or
                no valid child key exists for it
        """
        branch = self._branch_key(change)
        scripts: dict[int, bytes] = {}
        for index in indexes:
            if not 0 <= index < HARDENED_OFFSET:
                raise DescriptorError(f"Descriptor exhausted: index {index} is not derivable")
            try:
                child = branch.derive_child(index)
                scripts[index] = _script_for(self.script_type, child.public_key)
            except ValueError as e:
                raise DescriptorError(f"Cannot derive script at index {index}: {e}") from e
        logger.trace(f"Derived {len(scripts)} scripts on branch {int(change)}")
        return scripts

    def address(self, change: bool, index: int) -> str:
        script = self.script_pubkeys(change, [index])[index]
        return scriptpubkey_to_address(script, self._network)

    def to_string(self, change: bool | None = None) -> str:
        """
        Output descriptor, e.g. ``wpkh([73c5da0a/84'/0'/0']xpub.../0/*)``.

        With ``change=None`` the multipath form ``<0;1>`` is rendered.
        """
        key = self.account_xpub.to_string(self._network)
        if self.origin is not None:
            fingerprint, path = self.origin
            key = f"[{fingerprint.hex()}{str(path)[1:]}]{key}"
        branch = "<0;1>" if change is None else str(int(change))
        inner = f"{key}/{branch}/*"
        if self.script_type == ScriptType.SH_WPKH:
            return f"sh(wpkh({inner}))"
        return f"{self.script_type.value}({inner})"

    def __str__(self) -> str:
        return self.to_string()

    def __repr__(self) -> str:
        return f"SingleSigDescriptor({self.to_string()!r}, network={self._network.value})"
