"""
Tests for wallet descriptors.
"""

import pytest
from _hdwatch_test_helpers import (
    BIP84_FIRST_CHANGE,
    BIP84_FIRST_RECEIVE,
    BIP84_ZPUB,
    BIP86_FIRST_RECEIVE,
    BIP86_XPUB,
    TEST_MASTER_FINGERPRINT,
)

from hdwatch.bitcoin import NetworkType, hash160, pubkey_to_p2pkh_script, pubkey_to_p2wpkh_script
from hdwatch.descriptor import (
    DEFAULT_ENDPOINT,
    DescriptorError,
    ScriptType,
    SingleSigDescriptor,
    WalletDescriptor,
    taproot_output_key,
)
from hdwatch.wallet.bip32 import ExtendedPublicKey
from hdwatch.wallet.path import HARDENED_OFFSET, DerivationPath


def test_wpkh_addresses_from_zpub():
    descriptor = SingleSigDescriptor(BIP84_ZPUB)

    assert descriptor.script_type == ScriptType.WPKH
    assert descriptor.network() == NetworkType.MAINNET
    assert descriptor.endpoint() == DEFAULT_ENDPOINT
    assert descriptor.address(False, 0) == BIP84_FIRST_RECEIVE
    assert descriptor.address(True, 0) == BIP84_FIRST_CHANGE


def test_taproot_address():
    descriptor = SingleSigDescriptor(BIP86_XPUB, script_type="tr")
    assert descriptor.address(False, 0) == BIP86_FIRST_RECEIVE


def test_taproot_output_key_vector():
    internal = bytes.fromhex("02cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115")
    assert taproot_output_key(internal).hex() == (
        "a60869f0dbcf1dc659c9cecbaf8050135ea9e8cdc487053f1dc6880949dc684c"
    )


def test_script_pubkeys_window_is_ordered():
    descriptor = SingleSigDescriptor(BIP84_ZPUB)
    scripts = descriptor.script_pubkeys(False, range(20, 40))

    assert list(scripts) == list(range(20, 40))
    assert all(len(script) == 22 and script[:2] == b"\x00\x14" for script in scripts.values())
    assert len(set(scripts.values())) == 20


def test_branches_differ():
    descriptor = SingleSigDescriptor(BIP84_ZPUB)
    receive = descriptor.script_pubkeys(False, range(5))
    change = descriptor.script_pubkeys(True, range(5))
    assert not set(receive.values()) & set(change.values())


def test_pkh_scripts():
    xpub = ExtendedPublicKey.from_string(BIP84_ZPUB)
    descriptor = SingleSigDescriptor(xpub, script_type=ScriptType.PKH)
    script = descriptor.script_pubkeys(False, [3])[3]
    assert script == pubkey_to_p2pkh_script(xpub.derive("0/3").public_key)
    assert descriptor.address(False, 3).startswith("1")


def test_sh_wpkh_scripts():
    xpub = ExtendedPublicKey.from_string(BIP84_ZPUB)
    descriptor = SingleSigDescriptor(xpub, script_type="sh-wpkh")
    script = descriptor.script_pubkeys(True, [0])[0]

    redeem = pubkey_to_p2wpkh_script(xpub.derive("1/0").public_key)
    assert script == bytes([0xA9, 0x14]) + hash160(redeem) + bytes([0x87])
    assert descriptor.address(True, 0).startswith("3")


def test_exhaustion_at_hardened_boundary():
    descriptor = SingleSigDescriptor(BIP84_ZPUB)
    last = descriptor.script_pubkeys(False, [HARDENED_OFFSET - 1])
    assert HARDENED_OFFSET - 1 in last

    with pytest.raises(DescriptorError, match="exhausted"):
        descriptor.script_pubkeys(False, range(HARDENED_OFFSET - 1, HARDENED_OFFSET + 1))


def test_negative_index_rejected():
    with pytest.raises(DescriptorError):
        SingleSigDescriptor(BIP84_ZPUB).script_pubkeys(False, [-1])


def test_invalid_key():
    with pytest.raises(DescriptorError, match="Invalid account extended public key"):
        SingleSigDescriptor("xpub-not-a-key")


def test_unsupported_script_type():
    with pytest.raises(DescriptorError, match="Unsupported script type"):
        SingleSigDescriptor(BIP84_ZPUB, script_type="wsh")


def test_network_override():
    descriptor = SingleSigDescriptor(BIP84_ZPUB, network="regtest", endpoint="tcp://localhost:1")
    assert descriptor.network() == NetworkType.REGTEST
    assert descriptor.endpoint() == "tcp://localhost:1"
    assert descriptor.address(False, 0).startswith("bcrt1q")


def test_descriptor_string():
    origin = (bytes.fromhex(TEST_MASTER_FINGERPRINT), DerivationPath.parse("m/84'/0'/0'"))
    descriptor = SingleSigDescriptor(BIP84_ZPUB, origin=origin)
    xpub = ExtendedPublicKey.from_string(BIP84_ZPUB).to_string()

    assert descriptor.to_string(change=False) == f"wpkh([73c5da0a/84'/0'/0']{xpub}/0/*)"
    assert str(descriptor) == f"wpkh([73c5da0a/84'/0'/0']{xpub}/<0;1>/*)"


def test_sh_wpkh_descriptor_string():
    descriptor = SingleSigDescriptor(BIP84_ZPUB, script_type="sh-wpkh")
    assert descriptor.to_string(change=True).startswith("sh(wpkh(xpub")
    assert descriptor.to_string(change=True).endswith("/1/*))")


def test_satisfies_protocol():
    assert isinstance(SingleSigDescriptor(BIP84_ZPUB), WalletDescriptor)


@pytest.mark.parametrize(
    ("script_type", "network", "expected"),
    [
        (ScriptType.PKH, "mainnet", "m/44'/0'/0'"),
        (ScriptType.WPKH, "mainnet", "m/84'/0'/0'"),
        (ScriptType.TR, "testnet", "m/86'/1'/0'"),
        (ScriptType.SH_WPKH, NetworkType.REGTEST, "m/49'/1'/0'"),
    ],
)
def test_account_path(script_type, network, expected):
    assert str(script_type.account_path(network)) == expected
