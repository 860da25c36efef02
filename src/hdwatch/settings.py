"""
Settings management for hdwatch.

Configuration is read with pydantic-settings from, highest priority first:
1. Constructor arguments (CLI options are passed through here)
2. Environment variables
3. TOML config file (~/.hdwatch/config.toml)
4. Default values

Usage:
    from hdwatch.settings import get_settings

    settings = get_settings()
    print(settings.electrum.server)
    print(settings.watcher.window_size)

Environment Variable Naming:
    - Use uppercase with double underscore for nested settings
    - Examples: ELECTRUM__SERVER, WATCHER__POLL_INTERVAL, WALLET__XPUB
    - Maps to TOML sections: ELECTRUM__SERVER -> [electrum] server
"""

from __future__ import annotations

import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from hdwatch.bitcoin import NetworkType
from hdwatch.descriptor import DEFAULT_ENDPOINT, ScriptType


def get_default_data_dir() -> Path:
    """~/.hdwatch, or $HDWATCH_DATA_DIR if set."""
    env_path = os.getenv("HDWATCH_DATA_DIR")
    return Path(env_path) if env_path else Path.home() / ".hdwatch"


def get_config_path() -> Path:
    env_path = os.environ.get("HDWATCH_CONFIG_FILE")
    if env_path:
        return Path(env_path)
    return get_default_data_dir() / "config.toml"


class ElectrumSettings(BaseModel):
    """Electrum server connection."""

    server: str = Field(
        default=DEFAULT_ENDPOINT,
        description="Electrum server: ssl://host:port, tcp://host:port or host:port:s",
    )
    connect_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Timeout in seconds for establishing the connection",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout in seconds for a single request or batch",
    )
    validate_certificate: bool = Field(
        default=True,
        description="Verify the server TLS certificate (disable for self-signed servers)",
    )


class WatcherSettings(BaseModel):
    """Synchronization engine tuning."""

    window_size: int = Field(
        default=20,
        ge=1,
        description="Addresses per discovery window; one empty window ends a branch (gap limit)",
    )
    tx_batch_size: int = Field(
        default=20,
        ge=1,
        description="Transactions fetched per batch request",
    )
    poll_interval: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between new block polls after the initial sync",
    )
    fee_targets: list[int] = Field(
        default_factory=lambda: [1, 2, 3],
        description="Confirmation targets (in blocks) for the three fee estimates",
    )

    @field_validator("fee_targets")
    @classmethod
    def validate_fee_targets(cls, v: list[int]) -> list[int]:
        if len(v) != 3:
            raise ValueError("fee_targets must hold exactly three confirmation targets")
        if any(target < 1 for target in v):
            raise ValueError("fee_targets must be positive block counts")
        return v


class NetworkSettings(BaseModel):
    """Network configuration."""

    network: NetworkType = Field(
        default=NetworkType.MAINNET,
        description="Bitcoin network (mainnet, testnet, signet, regtest)",
    )


class WalletSettings(BaseModel):
    """Watch-only wallet to synchronize."""

    xpub: str | None = Field(
        default=None,
        description="Account extended public key (xpub/tpub/ypub/zpub/upub/vpub)",
    )
    script_type: ScriptType = Field(
        default=ScriptType.WPKH,
        description="Output script template: pkh, sh-wpkh, wpkh or tr",
    )


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="INFO",
        description="Log level: TRACE, DEBUG, INFO, WARNING, ERROR",
    )


class HDWatchSettings(BaseSettings):
    """
    Main hdwatch settings class.

    Loads configuration from multiple sources with the following priority:
    1. Constructor arguments
    2. Environment variables
    3. TOML config file
    4. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    electrum: ElectrumSettings = Field(default_factory=ElectrumSettings)
    watcher: WatcherSettings = Field(default_factory=WatcherSettings)
    network_config: NetworkSettings = Field(default_factory=NetworkSettings)
    wallet: WalletSettings = Field(default_factory=WalletSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        toml_source = TomlConfigSettingsSource(settings_cls)
        return (
            init_settings,
            env_settings,
            toml_source,
        )


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """
    Settings source reading the TOML config file.

    The file is looked up at $HDWATCH_CONFIG_FILE, else
    $HDWATCH_DATA_DIR/config.toml, else ~/.hdwatch/config.toml.
    """

    def __init__(self, settings_cls: type[BaseSettings]) -> None:
        super().__init__(settings_cls)
        self._config: dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        config_path = get_config_path()

        if not config_path.exists():
            logger.debug(f"Config file not found at {config_path}, using defaults")
            return

        try:
            with open(config_path, "rb") as f:
                self._config = tomllib.load(f)
            logger.info(f"Loaded config from {config_path}")
        except tomllib.TOMLDecodeError as e:
            logger.error(f"Invalid TOML syntax in config file {config_path}")
            logger.error(f"Error: {e}")
            logger.error("Please fix the syntax errors in your config file and try again.")
            sys.exit(1)
        except OSError as e:
            logger.error(f"Failed to load config from {config_path}: {e}")
            sys.exit(1)

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        value = self._config.get(field_name)
        return value, field_name, value is not None

    def __call__(self) -> dict[str, Any]:
        return self._config


def generate_config_template() -> str:
    """
    Config file template listing every setting, commented out, with its
    default value and description.
    """
    lines: list[str] = [
        "# hdwatch configuration",
        "#",
        "# Settings are commented out by default - uncomment to override.",
        "# Environment variables use uppercase with double underscore for nesting:",
        "#   ELECTRUM__SERVER=ssl://electrum.blockstream.info:50002",
        "",
    ]

    def add_section(title: str, model_cls: type[BaseModel], prefix: str) -> None:
        lines.append(f"# {'=' * 60}")
        lines.append(f"# {title}")
        lines.append(f"# {'=' * 60}")
        lines.append(f"[{prefix}]")
        lines.append("")

        for field_name, field_info in model_cls.model_fields.items():
            if field_info.description:
                lines.append(f"# {field_info.description}")

            default = field_info.default
            if field_info.default_factory is not None:
                default = field_info.default_factory()  # type: ignore[call-arg]

            if default is None:
                lines.append(f"# {field_name} = ")
                lines.append("")
                continue
            if isinstance(default, bool):
                value_str = str(default).lower()
            elif hasattr(default, "value"):  # Enum
                value_str = f'"{default.value}"'
            elif isinstance(default, str):
                value_str = f'"{default}"'
            else:
                value_str = str(default)

            lines.append(f"# {field_name} = {value_str}")
            lines.append("")

    add_section("Electrum Server", ElectrumSettings, "electrum")
    add_section("Watcher", WatcherSettings, "watcher")
    add_section("Network", NetworkSettings, "network_config")
    add_section("Wallet", WalletSettings, "wallet")
    add_section("Logging", LoggingSettings, "logging")

    return "\n".join(lines)


def ensure_config_file(data_dir: Path | None = None) -> Path:
    """Create a config template in ``data_dir`` if there is none yet."""
    if data_dir is None:
        data_dir = get_default_data_dir()

    config_path = data_dir / "config.toml"
    if not config_path.exists():
        logger.info(f"Creating config file template at {config_path}")
        data_dir.mkdir(parents=True, exist_ok=True)
        config_path.write_text(generate_config_template())

    return config_path


# Global settings instance (lazy-loaded)
_settings: HDWatchSettings | None = None


def get_settings(**overrides: Any) -> HDWatchSettings:
    """
    Process-wide settings, loaded on first call.

    Passing overrides rebuilds the instance with them at highest priority.
    """
    global _settings
    if _settings is None or overrides:
        _settings = HDWatchSettings(**overrides)
    return _settings


def reset_settings() -> None:
    """Reset the global settings instance (useful for testing)."""
    global _settings
    _settings = None


__all__ = [
    "ElectrumSettings",
    "HDWatchSettings",
    "LoggingSettings",
    "NetworkSettings",
    "TomlConfigSettingsSource",
    "WalletSettings",
    "WatcherSettings",
    "ensure_config_file",
    "generate_config_template",
    "get_config_path",
    "get_default_data_dir",
    "get_settings",
    "reset_settings",
]
