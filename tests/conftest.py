"""
Pytest configuration and fixtures for hdwatch tests.
"""

from collections.abc import Iterator

import pytest

from hdwatch.settings import reset_settings


@pytest.fixture
def test_mnemonic() -> str:
    """Test mnemonic (BIP39 test vector)"""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def test_network() -> str:
    """Test network"""
    return "regtest"


@pytest.fixture
def isolated_config(tmp_path, monkeypatch) -> Iterator[None]:
    """Point the config lookup at an empty data directory and clear env overrides."""
    monkeypatch.setenv("HDWATCH_DATA_DIR", str(tmp_path))
    monkeypatch.delenv("HDWATCH_CONFIG_FILE", raising=False)
    for name in (
        "ELECTRUM__SERVER",
        "WATCHER__WINDOW_SIZE",
        "WALLET__XPUB",
        "WALLET__SCRIPT_TYPE",
        "NETWORK_CONFIG__NETWORK",
        "LOGGING__LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()
