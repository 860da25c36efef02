"""
Common CLI helpers: logging setup and option resolution.

Resolution order for every option: CLI argument > settings (env + config
file) > default.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from hdwatch.bitcoin import NetworkType
from hdwatch.descriptor import ScriptType
from hdwatch.settings import HDWatchSettings, get_settings, reset_settings
from hdwatch.wallet.bip32 import validate_mnemonic

MNEMONIC_WORD_COUNTS = (12, 15, 18, 21, 24)


@dataclass
class ResolvedSyncSettings:
    """Resolved sync options ready for use."""

    xpub: str
    server: str
    network: NetworkType | None
    script_type: ScriptType | None


def setup_logging(level: str = "INFO") -> None:
    """
    Configure loguru logging with consistent format.

    Args:
        level: Log level (TRACE, DEBUG, INFO, WARNING, ERROR)
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        level=level.upper(),
        colorize=True,
    )


def setup_cli(log_level: str | None = None) -> HDWatchSettings:
    """
    Common CLI setup: reset settings cache, configure logging, return settings.

    Log level priority: CLI argument > settings (env/config) > default "INFO"
    """
    reset_settings()
    settings = get_settings()

    effective_log_level = log_level if log_level is not None else settings.logging.level
    setup_logging(effective_log_level)

    return settings


def resolve_sync_settings(
    settings: HDWatchSettings,
    *,
    xpub: str | None = None,
    server: str | None = None,
    network: str | None = None,
    script_type: str | None = None,
) -> ResolvedSyncSettings:
    """
    Resolve sync options.

    Network and script type stay None when neither the CLI nor the config
    sets them explicitly, so the descriptor falls back to what the extended
    key itself encodes.

    Raises:
        ValueError: If no extended public key is configured anywhere
    """
    resolved_xpub = xpub or settings.wallet.xpub
    if not resolved_xpub:
        raise ValueError("No extended public key given (use --xpub or WALLET__XPUB)")

    resolved_network: NetworkType | None = None
    if network is not None:
        resolved_network = NetworkType(network)
    elif "network_config" in settings.model_fields_set:
        resolved_network = settings.network_config.network

    resolved_script_type: ScriptType | None = None
    if script_type is not None:
        resolved_script_type = ScriptType(script_type)
    elif "wallet" in settings.model_fields_set and (
        "script_type" in settings.wallet.model_fields_set
    ):
        resolved_script_type = settings.wallet.script_type

    return ResolvedSyncSettings(
        xpub=resolved_xpub,
        server=server or settings.electrum.server,
        network=resolved_network,
        script_type=resolved_script_type,
    )


def load_mnemonic_from_file(path: Path) -> str:
    """
    Read a plain-text BIP39 mnemonic.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the content is not a valid BIP39 phrase
    """
    if not path.exists():
        raise FileNotFoundError(f"Mnemonic file not found: {path}")

    words = path.read_text(encoding="utf-8", errors="replace").split()
    if len(words) not in MNEMONIC_WORD_COUNTS:
        raise ValueError(
            f"Invalid mnemonic: expected 12-24 words, got {len(words)}. "
            f"File may be corrupted or in wrong format: {path}"
        )
    return validate_mnemonic_words(" ".join(words))


def validate_mnemonic_words(mnemonic: str) -> str:
    """Normalize whitespace and reject phrases that fail the BIP39 checks."""
    words = mnemonic.split()
    if len(words) not in MNEMONIC_WORD_COUNTS:
        raise ValueError(f"Invalid mnemonic: expected 12-24 words, got {len(words)}")
    phrase = " ".join(words)
    if not validate_mnemonic(phrase):
        raise ValueError("Invalid mnemonic: unknown word or bad checksum")
    return phrase
