"""
hdwatch command-line interface.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from loguru import logger

from hdwatch.bitcoin import NetworkType, btc_per_kvb_to_sat_per_vb
from hdwatch.cli_common import (
    load_mnemonic_from_file,
    resolve_sync_settings,
    setup_cli,
    validate_mnemonic_words,
)
from hdwatch.descriptor import DescriptorError, ScriptType, SingleSigDescriptor
from hdwatch.events import (
    Complete,
    Connected,
    Error,
    EventChannel,
    LastBlock,
    LastBlockUpdate,
    TxBatch,
)
from hdwatch.settings import ensure_config_file, get_default_data_dir
from hdwatch.signer import XprivSigner
from hdwatch.state import WalletState
from hdwatch.wallet.path import DerivationPath
from hdwatch.watcher import ElectrumWatcher

app = typer.Typer(
    name="hdwatch",
    help="HD wallet signer and Electrum watch-only synchronization",
    add_completion=False,
)


def main() -> None:
    """Entry point for the ``hdwatch`` console script."""
    app()


@app.command()
def fingerprint(
    mnemonic_file: Annotated[Path | None, typer.Option("--mnemonic-file", "-f")] = None,
    bip39_passphrase: Annotated[
        str,
        typer.Option(
            "--bip39-passphrase",
            envvar="BIP39_PASSPHRASE",
            help="BIP39 passphrase (13th/25th word)",
        ),
    ] = "",
    script_type: Annotated[
        str, typer.Option("--script-type", "-t", help="pkh | sh-wpkh | wpkh | tr")
    ] = "wpkh",
    network: Annotated[str, typer.Option("--network", "-n", help="Bitcoin network")] = "mainnet",
    account: Annotated[int, typer.Option("--account", "-a", help="Account number")] = 0,
    account_path: Annotated[
        str | None,
        typer.Option("--account-path", help="Explicit account path, e.g. m/84'/0'/0'"),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", "-l", help="Log level"),
    ] = None,
) -> None:
    """Show the master fingerprint and account xpub of a mnemonic."""
    setup_cli(log_level)

    try:
        if mnemonic_file is not None:
            mnemonic = load_mnemonic_from_file(mnemonic_file)
        else:
            mnemonic = validate_mnemonic_words(typer.prompt("Enter mnemonic", hide_input=True))
        resolved_type = ScriptType(script_type)
        resolved_network = NetworkType(network)
        path = (
            DerivationPath.parse(account_path)
            if account_path
            else resolved_type.account_path(resolved_network, account)
        )
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        raise typer.Exit(1)

    signer = XprivSigner.from_mnemonic(mnemonic, bip39_passphrase)
    account_xpub = signer.xpriv.derive(path).neuter(resolved_network)
    descriptor = SingleSigDescriptor(
        account_xpub,
        script_type=resolved_type,
        network=resolved_network,
        origin=(signer.fingerprint, path),
    )

    typer.echo(f"Master fingerprint: {signer.fingerprint.hex()}")
    typer.echo(f"Account path:       {path}")
    typer.echo(f"Account xpub:       {account_xpub.to_string()}")
    typer.echo(f"Descriptor:         {descriptor}")
    typer.echo(f"First address:      {descriptor.address(False, 0)}")


@app.command()
def sync(
    xpub: Annotated[
        str | None, typer.Option("--xpub", "-x", help="Account extended public key")
    ] = None,
    server: Annotated[
        str | None,
        typer.Option("--server", "-s", help="Electrum server, e.g. ssl://host:50002"),
    ] = None,
    network: Annotated[str | None, typer.Option("--network", "-n", help="Bitcoin network")] = None,
    script_type: Annotated[
        str | None, typer.Option("--script-type", "-t", help="pkh | sh-wpkh | wpkh | tr")
    ] = None,
    watch: Annotated[
        bool, typer.Option("--watch", "-w", help="Keep following new blocks after sync")
    ] = False,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", "-l", help="Log level"),
    ] = None,
) -> None:
    """Synchronize a watch-only wallet against an Electrum server."""
    settings = setup_cli(log_level)

    try:
        resolved = resolve_sync_settings(
            settings, xpub=xpub, server=server, network=network, script_type=script_type
        )
        descriptor = SingleSigDescriptor(
            resolved.xpub,
            script_type=resolved.script_type,
            network=resolved.network,
            endpoint=resolved.server,
        )
    except (ValueError, DescriptorError) as e:
        logger.error(str(e))
        raise typer.Exit(1)

    logger.info(f"Synchronizing {descriptor} via {resolved.server}")

    channel = EventChannel()
    watcher = ElectrumWatcher(
        descriptor, channel, settings=settings.watcher, electrum_settings=settings.electrum
    )
    state = WalletState()

    watcher.start()
    try:
        exit_code = _consume_events(channel, state, watch)
    except KeyboardInterrupt:
        typer.echo("Interrupted, stopping watcher")
        exit_code = 0
    finally:
        watcher.stop()
        channel.close()
        watcher.join(timeout=5.0)

    raise typer.Exit(exit_code)


def _consume_events(channel: EventChannel, state: WalletState, watch: bool) -> int:
    for msg in channel:
        state.apply(msg)

        if isinstance(msg, Connected):
            typer.echo(f"Connected to {msg.endpoint}")
        elif isinstance(msg, LastBlock):
            typer.echo(f"Chain tip: {msg.header.height}")
        elif isinstance(msg, TxBatch):
            typer.echo(f"Fetching transactions: {msg.progress:.0%}")
        elif isinstance(msg, Complete):
            _print_summary(state)
            if not watch:
                return 0
            typer.echo("Watching for new blocks (Ctrl-C to stop)")
        elif isinstance(msg, LastBlockUpdate):
            typer.echo(f"New block {msg.header.height}: {msg.header.block_hash}")
        elif isinstance(msg, Error):
            typer.echo(f"Sync failed: {msg}", err=True)
            return 1
    return 1


def _print_summary(state: WalletState) -> None:
    balance = state.balance()

    typer.echo("\nSync complete")
    typer.echo("=" * 60)
    if state.tip is not None:
        typer.echo(f"Tip:               {state.tip.height} ({state.tip.block_hash})")
    if state.fee_estimate is not None:
        rates = []
        for target, rate in zip((1, 2, 3), state.fee_estimate.as_tuple()):
            sat_per_vb = btc_per_kvb_to_sat_per_vb(rate)
            rates.append(f"{target}: " + ("n/a" if sat_per_vb is None else f"{sat_per_vb:.1f}"))
        typer.echo(f"Fees (sat/vB):     {', '.join(rates)}")
    typer.echo(f"Next receive index: {state.next_unused_index(change=False)}")
    typer.echo(f"Next change index:  {state.next_unused_index(change=True)}")
    typer.echo(f"Transactions:      {len(state.transactions)}")
    typer.echo(f"Unspent outputs:   {len(state.utxos)}")
    typer.echo(f"Confirmed:         {balance.confirmed:,} sats")
    typer.echo(f"Unconfirmed:       {balance.unconfirmed:,} sats")


@app.command()
def config_init(
    data_dir: Annotated[
        Path | None, typer.Option("--data-dir", "-d", help="Directory for config.toml")
    ] = None,
) -> None:
    """Write a commented config.toml template if none exists."""
    path = ensure_config_file(data_dir or get_default_data_dir())
    typer.echo(f"Config file: {path}")


if __name__ == "__main__":
    main()
