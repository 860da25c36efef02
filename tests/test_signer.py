"""
Tests for the master-key signer.
"""

import threading

import pytest
from _hdwatch_test_helpers import TEST_MASTER_FINGERPRINT
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly

from hdwatch.signer import (
    SIGNING_CONTEXT,
    KeyPair,
    SecretProvider,
    SecretProviderError,
    UnknownAccountError,
    XprivSigner,
)
from hdwatch.wallet.path import DerivationPath

BIP84_PATH = DerivationPath.parse("m/84'/0'/0'/0/0")
BIP84_PUBKEY = bytes.fromhex("0330d54fd0dd420a6e5f8d3624f5f3482cae350f79d5f0753bf5beef9c2d91af3c")
BIP86_PATH = DerivationPath.parse("m/86'/0'/0'/0/0")
BIP86_INTERNAL_KEY = bytes.fromhex(
    "cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115"
)
OTHER_FINGERPRINT = bytes.fromhex("deadbeef")


@pytest.fixture
def signer(test_mnemonic) -> XprivSigner:
    return XprivSigner.from_mnemonic(test_mnemonic)


def test_fingerprint(signer):
    assert signer.fingerprint.hex() == TEST_MASTER_FINGERPRINT


def test_is_secret_provider(signer):
    assert isinstance(signer, SecretProvider)


def test_invalid_mnemonic_rejected_before_derivation(test_mnemonic):
    with pytest.raises(ValueError, match="Invalid mnemonic"):
        XprivSigner.from_mnemonic(test_mnemonic.replace("about", "abandon"))


def test_shares_process_context(signer, test_mnemonic):
    other = XprivSigner.from_mnemonic(test_mnemonic, "passphrase")
    assert signer.secp_context is SIGNING_CONTEXT
    assert other.secp_context is signer.secp_context


def test_secret_key_matches_known_pubkey(signer):
    secret = signer.secret_key(signer.fingerprint, BIP84_PATH, BIP84_PUBKEY)
    assert isinstance(secret, PrivateKey)
    assert secret.public_key.format(compressed=True) == BIP84_PUBKEY


def test_derivation_is_deterministic(signer):
    first = signer.secret_key(signer.fingerprint, BIP84_PATH, BIP84_PUBKEY)
    second = signer.secret_key(signer.fingerprint, "m/84'/0'/0'/0/0", BIP84_PUBKEY)
    assert first.secret == second.secret


def test_same_seed_gives_same_secrets(signer, test_mnemonic):
    twin = XprivSigner.from_mnemonic(test_mnemonic)
    path = DerivationPath.parse("m/84'/0'/3'/1/42")
    assert (
        signer.secret_key(signer.fingerprint, path, b"").secret
        == twin.secret_key(twin.fingerprint, path, b"").secret
    )


@pytest.mark.parametrize(
    "fingerprint",
    [OTHER_FINGERPRINT, b"\x00\x00\x00\x00", bytes.fromhex("73c5da0b")],
)
def test_unknown_account(signer, fingerprint):
    with pytest.raises(UnknownAccountError) as exc_info:
        signer.secret_key(fingerprint, BIP84_PATH, BIP84_PUBKEY)

    assert exc_info.value.fingerprint == fingerprint
    assert exc_info.value.pubkey == BIP84_PUBKEY
    assert isinstance(exc_info.value, SecretProviderError)


def test_unknown_account_for_key_pair(signer):
    with pytest.raises(UnknownAccountError) as exc_info:
        signer.key_pair(OTHER_FINGERPRINT, BIP86_PATH, BIP86_INTERNAL_KEY)
    # x-only keys are reported in their even-Y compressed form
    assert exc_info.value.pubkey == b"\x02" + BIP86_INTERNAL_KEY


def test_key_pair_xonly(signer):
    keypair = signer.key_pair(signer.fingerprint, BIP86_PATH, BIP86_INTERNAL_KEY)
    assert keypair.xonly_public_key == BIP86_INTERNAL_KEY
    assert keypair.parity in (0, 1)


def test_key_pair_reuses_secret_derivation(signer):
    secret = signer.secret_key(signer.fingerprint, BIP86_PATH, b"")
    keypair = signer.key_pair(signer.fingerprint, BIP86_PATH, b"")
    assert keypair.private_key.secret == secret.secret


def test_schnorr_signature_verifies(signer):
    keypair = signer.key_pair(signer.fingerprint, BIP86_PATH, BIP86_INTERNAL_KEY)
    message = bytes(range(32))
    signature = keypair.sign_schnorr(message, bytes(32))

    assert len(signature) == 64
    assert PublicKeyXOnly(keypair.xonly_public_key).verify(signature, message)


def test_ecdsa_signature_verifies(signer):
    secret = signer.secret_key(signer.fingerprint, BIP84_PATH, BIP84_PUBKEY)
    digest = bytes(range(32))
    signature = secret.sign(digest, hasher=None)
    assert PublicKey(BIP84_PUBKEY).verify(signature, digest, hasher=None)


def test_no_key_aggregation(signer):
    assert signer.supports_key_aggregation() is False


def test_from_string(signer):
    restored = XprivSigner.from_string(signer.xpriv.to_string())
    assert restored.fingerprint == signer.fingerprint


def test_repr_hides_secrets(signer):
    text = repr(signer)
    assert TEST_MASTER_FINGERPRINT in text
    assert signer.xpriv.to_string() not in text
    keypair = signer.key_pair(signer.fingerprint, BIP86_PATH, b"")
    assert keypair.private_key.secret.hex() not in repr(keypair)


def test_concurrent_derivation(signer):
    expected = signer.secret_key(signer.fingerprint, BIP84_PATH, BIP84_PUBKEY).secret
    results: list[bytes] = []

    def worker():
        for _ in range(5):
            results.append(signer.secret_key(signer.fingerprint, BIP84_PATH, BIP84_PUBKEY).secret)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 20
    assert all(secret == expected for secret in results)


def test_keypair_from_secret_key():
    secret = PrivateKey(b"\x01" * 32)
    keypair = KeyPair.from_secret_key(secret)
    assert keypair.public_key == secret.public_key.format(compressed=True)
