"""
Signing of precomputed input sighashes through a secret provider.

Sighash computation (BIP143/BIP341) is the caller's job; this module only
turns (fingerprint, path, pubkey, sighash) requests into signatures. Inputs
whose keys the provider does not manage are reported as unsigned rather than
failing the whole batch.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from hdwatch.signer import SecretProvider, UnknownAccountError
from hdwatch.wallet.path import DerivationPath


class SigningError(Exception):
    pass


class SigningScheme(str, Enum):
    ECDSA = "ecdsa"
    SCHNORR = "schnorr"
    MUSIG = "musig"


@dataclass
class SigningRequest:
    """One input to sign."""

    input_index: int
    fingerprint: bytes
    derivation: DerivationPath
    pubkey: bytes  # 33-byte compressed, or 32-byte x-only for Schnorr
    sighash: bytes  # 32-byte digest
    scheme: SigningScheme = SigningScheme.ECDSA
    # Taproot key path: sign with the BIP341-tweaked key. Empty for BIP86.
    # With a tweak, ``pubkey`` is the x-only output key.
    tap_merkle_root: bytes | None = None

    def __post_init__(self) -> None:
        if len(self.sighash) != 32:
            raise ValueError(f"Sighash must be 32 bytes, got {len(self.sighash)}")
        if self.tap_merkle_root is not None:
            if self.scheme != SigningScheme.SCHNORR:
                raise ValueError("Taproot tweak requires the Schnorr scheme")
            if len(self.tap_merkle_root) not in (0, 32):
                raise ValueError("Merkle root must be empty or 32 bytes")


@dataclass
class SigningReport:
    """Outcome of a signing pass."""

    signatures: dict[int, bytes] = field(default_factory=dict)
    unsigned: list[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.unsigned


def sign_inputs(
    provider: SecretProvider,
    requests: Iterable[SigningRequest],
    aux_randomness: bytes = b"",
) -> SigningReport:
    """
    Sign every request the provider holds keys for.

    ECDSA signatures are DER encoded (without sighash type byte); Schnorr
    signatures are the raw 64-byte BIP340 form. Schnorr requests without
    ``tap_merkle_root`` sign with the untweaked key (script path); with it,
    they sign for the taproot output key (key path).

    Raises:
        SigningError: If an aggregate (MuSig) request is given to a provider
            without key aggregation support
    """
    requests = list(requests)

    if not provider.supports_key_aggregation():
        aggregate = [r.input_index for r in requests if r.scheme == SigningScheme.MUSIG]
        if aggregate:
            raise SigningError(
                f"Key aggregation is not supported by this signer (inputs {aggregate})"
            )

    report = SigningReport()
    for request in requests:
        try:
            signature = _sign_one(provider, request, aux_randomness)
        except UnknownAccountError as e:
            logger.debug(
                f"Input {request.input_index}: fingerprint {e.fingerprint.hex()} "
                "not managed by this signer"
            )
            report.unsigned.append(request.input_index)
            continue

        if signature is None:
            report.unsigned.append(request.input_index)
        else:
            report.signatures[request.input_index] = signature

    logger.info(f"Signed {len(report.signatures)}/{len(requests)} inputs")
    return report


def _sign_one(
    provider: SecretProvider, request: SigningRequest, aux_randomness: bytes
) -> bytes | None:
    if request.scheme == SigningScheme.MUSIG:
        raise SigningError("MuSig sessions are not handled by sign_inputs")

    if request.scheme == SigningScheme.SCHNORR:
        keypair = provider.key_pair(request.fingerprint, request.derivation, request.pubkey)
        if request.tap_merkle_root is not None:
            keypair = keypair.tap_tweak(request.tap_merkle_root)
        expected = request.pubkey[-32:]
        if keypair.xonly_public_key != expected:
            logger.warning(
                f"Input {request.input_index}: derived key at {request.derivation} "
                "does not match the input public key"
            )
            return None
        return keypair.sign_schnorr(request.sighash, aux_randomness)

    secret = provider.secret_key(request.fingerprint, request.derivation, request.pubkey)
    if secret.public_key.format(compressed=True) != request.pubkey:
        logger.warning(
            f"Input {request.input_index}: derived key at {request.derivation} "
            "does not match the input public key"
        )
        return None
    return secret.sign(request.sighash, hasher=None)
