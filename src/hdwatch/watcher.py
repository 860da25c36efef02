"""
Electrum synchronization engine.

The watcher runs on its own thread ("electrum-watcher") with a private
asyncio loop and reports everything it learns through an ``EventChannel``:

    Connecting -> Connected -> LastBlock -> FeeEstimate
      -> (HistoryBatch, UtxoBatch) per window, receiving branch then change
      -> TxBatch ... -> Complete -> LastBlockUpdate ...

Address discovery uses a fixed gap limit: a branch is done as soon as one
full window of addresses has no history. Any transport, protocol or
descriptor failure ends the run with a single terminal ``Error`` event.
There is no retry; the consumer starts a new watcher if it wants one.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from hdwatch.bitcoin import scriptpubkey_to_address
from hdwatch.descriptor import DescriptorError, WalletDescriptor
from hdwatch.electrum import (
    ElectrumClient,
    ElectrumConnectionError,
    ElectrumError,
    ElectrumProtocolError,
)
from hdwatch.events import (
    ChannelClosedError,
    Complete,
    Connected,
    Connecting,
    Error,
    EventChannel,
    FeeEstimate,
    HistoryBatch,
    LastBlock,
    LastBlockUpdate,
    TxBatch,
    UtxoBatch,
    WatchMsg,
)
from hdwatch.models import BlockHeader, HistoryRecord, UtxoRecord
from hdwatch.settings import ElectrumSettings, WatcherSettings

WATCHER_THREAD_NAME = "electrum-watcher"

BRANCHES = (False, True)  # receiving, then change


class WatcherState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FETCHING_FEE_ESTIMATE = "fetching_fee_estimate"
    SCANNING = "scanning"
    FETCHING_TRANSACTIONS = "fetching_transactions"
    WATCHING = "watching"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class BranchScan:
    """Discovery progress of one branch during a single sync pass."""

    change: bool
    offset: int = 0
    highest_used: int | None = None
    finished: bool = False

    def window(self, size: int) -> range:
        return range(self.offset, self.offset + size)

    def record_used(self, indexes: set[int]) -> None:
        if indexes:
            top = max(indexes)
            if self.highest_used is None or top > self.highest_used:
                self.highest_used = top

    def advance(self, size: int) -> None:
        self.offset += size


def default_client_factory(settings: ElectrumSettings) -> Callable[[str], ElectrumClient]:
    def factory(endpoint: str) -> ElectrumClient:
        try:
            return ElectrumClient(
                endpoint,
                connect_timeout=settings.connect_timeout,
                request_timeout=settings.request_timeout,
                validate_certificate=settings.validate_certificate,
            )
        except ValueError as e:
            raise ElectrumConnectionError(f"Invalid Electrum endpoint {endpoint!r}: {e}") from e

    return factory


class ElectrumWatcher:
    """
    Wallet synchronization worker.

    Args:
        descriptor: Supplies network, Electrum endpoint and output scripts
        channel: Sending side used for every event
        settings: Window size, batch size, poll interval and fee targets
        electrum_settings: Timeouts used by the default client factory
        client_factory: Builds an Electrum client for an endpoint string
    """

    def __init__(
        self,
        descriptor: WalletDescriptor,
        channel: EventChannel,
        settings: WatcherSettings | None = None,
        electrum_settings: ElectrumSettings | None = None,
        client_factory: Callable[[str], ElectrumClient] | None = None,
    ):
        self.descriptor = descriptor
        self.channel = channel
        self.settings = settings or WatcherSettings()
        self.client_factory = client_factory or default_client_factory(
            electrum_settings or ElectrumSettings()
        )

        self.state = WatcherState.IDLE
        self.tip: BlockHeader | None = None
        self.highest_used: dict[bool, int | None] = {}
        self._txids: dict[str, None] = {}  # insertion-ordered set

        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[None] | None = None
        self._stop_requested = threading.Event()
        self._lock = threading.Lock()

    @classmethod
    def spawn(
        cls, descriptor: WalletDescriptor, channel: EventChannel, **kwargs: object
    ) -> ElectrumWatcher:
        """Create a watcher and start its worker thread."""
        watcher = cls(descriptor, channel, **kwargs)  # type: ignore[arg-type]
        watcher.start()
        return watcher

    # -- Thread management -----------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Watcher already started")
        self._thread = threading.Thread(
            target=self._thread_main, name=WATCHER_THREAD_NAME, daemon=True
        )
        self._thread.start()

    def _thread_main(self) -> None:
        try:
            asyncio.run(self._main())
        finally:
            # The worker is the only sender; closing ends consumer iteration.
            self.channel.close()
            logger.debug("Watcher thread exiting")

    async def _main(self) -> None:
        with self._lock:
            self._loop = asyncio.get_running_loop()
            self._task = asyncio.current_task()
            if self._stop_requested.is_set():
                self._set_state(WatcherState.STOPPED)
                return
        try:
            await self.run()
        except asyncio.CancelledError:
            pass
        finally:
            with self._lock:
                self._loop = None
                self._task = None

    def stop(self) -> None:
        """
        Ask the worker to stop at its next suspension point.

        Returns immediately; use ``join`` to wait. No ``Error`` event is sent
        for a requested stop.
        """
        self._stop_requested.set()
        with self._lock:
            if self._loop is not None and self._task is not None:
                self._loop.call_soon_threadsafe(self._task.cancel)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def __enter__(self) -> ElectrumWatcher:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
        self.join()

    # -- Sync pass -------------------------------------------------------------

    async def run(self) -> None:
        """
        Full synchronization followed by block polling, on the current loop.

        Returns when the run fails (after sending ``Error``) or when the
        consumer closes the channel. Raises ``CancelledError`` when stopped.
        """
        endpoint = self.descriptor.endpoint()
        client: ElectrumClient | None = None
        try:
            self._set_state(WatcherState.CONNECTING)
            self._send(Connecting(endpoint))
            client = self.client_factory(endpoint)
            await client.connect()
            self._set_state(WatcherState.CONNECTED)
            self._send(Connected(endpoint))

            await self._snapshot(client)
            await self._scan(client)
            await self._fetch_transactions(client)
            self._send(Complete(dict(self.highest_used)))
            logger.info(
                f"Initial sync complete: {len(self._txids)} transactions, "
                f"highest used indexes {self.highest_used}"
            )

            await self._watch(client)
        except asyncio.CancelledError:
            self._set_state(WatcherState.STOPPED)
            logger.info("Watcher stopped")
            raise
        except ChannelClosedError:
            self._set_state(WatcherState.STOPPED)
            logger.info("Event channel closed by consumer, stopping watcher")
        except (ElectrumError, DescriptorError) as e:
            self._fail(e)
        except Exception as e:
            logger.exception(f"Unexpected watcher failure: {e}")
            self._fail(e)
        finally:
            if client is not None:
                await self._close_client(client)

    async def _snapshot(self, client: ElectrumClient) -> None:
        self._set_state(WatcherState.FETCHING_FEE_ESTIMATE)

        header = await client.block_headers_subscribe()
        self.tip = header
        self._send(LastBlock(header))
        logger.info(f"Chain tip at height {header.height}")

        rates = await client.batch_estimate_fee(self.settings.fee_targets)
        if len(rates) != 3:
            raise ElectrumProtocolError(f"Expected 3 fee estimates, got {len(rates)}")
        self._send(FeeEstimate(*rates))
        logger.debug(f"Fee estimates (BTC/kvB): {rates}")

    async def _scan(self, client: ElectrumClient) -> None:
        self._set_state(WatcherState.SCANNING)
        for change in BRANCHES:
            scan = BranchScan(change=change)
            while not scan.finished:
                await self._scan_window(client, scan)
            self.highest_used[change] = scan.highest_used
            logger.info(
                f"Branch {int(change)} scanned through window {scan.offset}, "
                f"highest used index: {scan.highest_used}"
            )

    async def _scan_window(self, client: ElectrumClient, scan: BranchScan) -> None:
        size = self.settings.window_size
        window = scan.window(size)
        scripts = self.descriptor.script_pubkeys(scan.change, window)
        if list(scripts) != list(window):
            raise DescriptorError(
                f"Descriptor returned indexes {list(scripts)[:3]}... for window at {scan.offset}"
            )
        script_list = list(scripts.values())

        histories = await client.batch_script_get_history(script_list)
        unspents = await client.batch_script_list_unspent(script_list)
        if len(histories) != len(script_list) or len(unspents) != len(script_list):
            raise ElectrumProtocolError(
                f"Batch reply size mismatch for {len(script_list)} scripts "
                f"({len(histories)} histories, {len(unspents)} unspent lists)"
            )

        history_records: list[HistoryRecord] = []
        utxo_records: list[UtxoRecord] = []
        for (index, script), history, unspent in zip(scripts.items(), histories, unspents):
            if not history and not unspent:
                continue
            address = self._address(script)
            for entry in history:
                history_records.append(
                    HistoryRecord(
                        txid=entry.tx_hash,
                        height=entry.height,
                        address=address,
                        script_pubkey=script.hex(),
                        index=index,
                        change=scan.change,
                        fee=entry.fee,
                    )
                )
            for utxo in unspent:
                utxo_records.append(
                    UtxoRecord(
                        txid=utxo.tx_hash,
                        height=utxo.height,
                        pos=utxo.tx_pos,
                        value=utxo.value,
                        address=address,
                        script_pubkey=script.hex(),
                        index=index,
                        change=scan.change,
                    )
                )

        self._send(HistoryBatch(history_records, scan.offset, scan.change))
        self._send(UtxoBatch(utxo_records, scan.offset, scan.change))

        for record in history_records:
            self._txids.setdefault(record.txid)
        for utxo_record in utxo_records:
            self._txids.setdefault(utxo_record.txid)

        logger.debug(
            f"Branch {int(scan.change)} window {scan.offset}: "
            f"{len(history_records)} history, {len(utxo_records)} unspent"
        )

        if not history_records:
            scan.finished = True
            return
        scan.record_used({record.index for record in history_records})
        scan.advance(size)

    def _address(self, script: bytes) -> str:
        try:
            return scriptpubkey_to_address(script, self.descriptor.network())
        except ValueError as e:
            raise DescriptorError(f"Script has no address form: {script.hex()}") from e

    async def _fetch_transactions(self, client: ElectrumClient) -> None:
        self._set_state(WatcherState.FETCHING_TRANSACTIONS)
        txids = list(self._txids)
        size = self.settings.tx_batch_size
        batches = [txids[i : i + size] for i in range(0, len(txids), size)]

        for number, batch in enumerate(batches, start=1):
            raw_txs = await client.batch_transaction_get(batch)
            if len(raw_txs) != len(batch):
                raise ElectrumProtocolError(
                    f"Requested {len(batch)} transactions, received {len(raw_txs)}"
                )
            progress = number / len(batches)
            self._send(TxBatch(dict(zip(batch, raw_txs, strict=True)), progress))
            logger.debug(f"Fetched transaction batch {number}/{len(batches)}")

    async def _watch(self, client: ElectrumClient) -> None:
        self._set_state(WatcherState.WATCHING)
        while True:
            await asyncio.sleep(self.settings.poll_interval)
            await client.ping()
            header = client.block_headers_pop()
            if header is None or header == self.tip:
                continue
            self.tip = header
            logger.info(f"New block at height {header.height}: {header.block_hash}")
            self._send(LastBlockUpdate(header))

    # -- Helpers -----------------------------------------------------------------

    def _set_state(self, state: WatcherState) -> None:
        if state != self.state:
            logger.info(f"Watcher state: {self.state.value} -> {state.value}")
            self.state = state

    def _check_stop(self) -> None:
        if self._stop_requested.is_set():
            raise asyncio.CancelledError()

    def _send(self, msg: WatchMsg) -> None:
        self._check_stop()
        while not self.channel.offer(msg):
            self._check_stop()

    def _fail(self, error: BaseException) -> None:
        self._set_state(WatcherState.FAILED)
        logger.error(f"Watcher failed: {type(error).__name__}: {error}")
        msg = Error(error)
        try:
            while not self.channel.offer(msg):
                if self._stop_requested.is_set():
                    logger.debug("Stop requested, failure not delivered")
                    return
        except ChannelClosedError:
            logger.debug("Event channel closed, failure not delivered")

    async def _close_client(self, client: ElectrumClient) -> None:
        while True:
            try:
                await client.close()
            except asyncio.CancelledError:
                # The cancel queued by stop() can land here after the stop
                # flag already unwound the run. Finish closing.
                if not self._stop_requested.is_set():
                    raise
                continue
            except (ElectrumError, OSError) as e:
                logger.debug(f"Error closing Electrum client: {e}")
            return
