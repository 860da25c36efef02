"""
Shared test helpers for hdwatch tests.

Constants, an in-memory Electrum server stand-in and a dictionary-backed
wallet descriptor. Kept out of conftest.py so test modules can import them
directly.
"""

from __future__ import annotations

import asyncio
import hashlib
import struct
import threading
from collections import deque
from collections.abc import Iterable
from typing import Any

from hdwatch.bitcoin import NetworkType
from hdwatch.descriptor import DescriptorError
from hdwatch.electrum import ElectrumConnectionError, HistoryEntry, UnspentEntry
from hdwatch.events import Complete, Error, EventChannel, WatchMsg
from hdwatch.models import BlockHeader
from hdwatch.settings import WatcherSettings
from hdwatch.watcher import ElectrumWatcher

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
)
TEST_MASTER_FINGERPRINT = "73c5da0a"

# BIP84 account m/84'/0'/0' of TEST_MNEMONIC
BIP84_ZPUB = (
    "zpub6rFR7y4Q2AijBEqTUquhVz398htDFrtymD9xYYfG1m4wAcvPhXNfE3EfH1r1ADqtfSdVCToUG868RvUUkgDKf31mGDtKsAYz2oz2AGutZYs"
)
BIP84_FIRST_RECEIVE = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
BIP84_FIRST_CHANGE = "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"

# BIP86 account m/86'/0'/0' of TEST_MNEMONIC
BIP86_XPUB = (
    "xpub6BgBgsespWvERF3LHQu6CnqdvfEvtMcQjYrcRzx53QJjSxarj2afYWcLteoGVky7D3UKDP9QyrLprQ3VCECoY49yfdDEHGCtMMj92pReUsQ"
)
BIP86_FIRST_RECEIVE = "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr"

TEST_ENDPOINT = "tcp://127.0.0.1:50001"


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def make_txid(label: str) -> str:
    """Deterministic 64-hex txid for a label."""
    return hashlib.sha256(label.encode()).hexdigest()


def make_header(height: int, nonce: int = 0) -> BlockHeader:
    raw = (
        struct.pack("<i", 0x20000000)
        + bytes(32)
        + hashlib.sha256(str(height).encode()).digest()
        + struct.pack("<III", 1_700_000_000 + height * 600, 0x1D00FFFF, nonce)
    )
    return BlockHeader(height=height, header_hex=raw.hex())


def fake_script(change: bool, index: int) -> bytes:
    """P2WPKH-shaped script unique to (branch, index)."""
    return bytes([0x00, 0x14, int(change)]) + index.to_bytes(19, "big")


class FakeDescriptor:
    """
    Wallet descriptor returning synthetic P2WPKH scripts.

    Args:
        fail_at: Index at which script derivation raises DescriptorError
    """

    def __init__(
        self,
        endpoint: str = TEST_ENDPOINT,
        network: NetworkType = NetworkType.REGTEST,
        fail_at: int | None = None,
    ):
        self._endpoint = endpoint
        self._network = network
        self.fail_at = fail_at
        self.requests: list[tuple[bool, list[int]]] = []

    def network(self) -> NetworkType:
        return self._network

    def endpoint(self) -> str:
        return self._endpoint

    def script_pubkeys(self, change: bool, indexes: Iterable[int]) -> dict[int, bytes]:
        indexes = list(indexes)
        self.requests.append((change, indexes))
        scripts = {}
        for index in indexes:
            if self.fail_at is not None and index >= self.fail_at:
                raise DescriptorError(f"Descriptor exhausted at index {index}")
            scripts[index] = fake_script(change, index)
        return scripts


class FakeElectrumClient:
    """
    In-memory Electrum client with the ElectrumClient call surface.

    Wallet activity is registered per (branch, index) with ``add_history``
    and ``add_utxo``. ``fail_on`` maps a method name to the 1-based call
    number that raises ``ElectrumConnectionError``, simulating a dropped
    connection at that point.
    """

    def __init__(
        self,
        tip: BlockHeader | None = None,
        fee_rates: list[float] | None = None,
        fail_on: dict[str, int] | None = None,
        close_delay: float = 0.0,
    ):
        self.tip = tip or make_header(800_000)
        self.fee_rates = fee_rates if fee_rates is not None else [0.0002, 0.00015, 0.0001]
        self.fail_on = dict(fail_on or {})
        self.close_delay = close_delay
        self.histories: dict[bytes, list[HistoryEntry]] = {}
        self.unspents: dict[bytes, list[UnspentEntry]] = {}
        self.transactions: dict[str, str] = {}
        self.pending_headers: deque[BlockHeader] = deque()
        self.calls: list[tuple[str, Any]] = []
        self.connected = False
        self.closed = False
        self.connect_thread: str | None = None

    # -- scenario setup -----------------------------------------------------

    def add_history(self, change: bool, index: int, txid: str, height: int = 100) -> None:
        script = fake_script(change, index)
        self.histories.setdefault(script, []).append(HistoryEntry(tx_hash=txid, height=height))
        self.transactions.setdefault(txid, "02000000" + txid)

    def add_utxo(
        self, change: bool, index: int, txid: str, value: int, pos: int = 0, height: int = 100
    ) -> None:
        script = fake_script(change, index)
        self.unspents.setdefault(script, []).append(
            UnspentEntry(tx_hash=txid, tx_pos=pos, height=height, value=value)
        )
        self.transactions.setdefault(txid, "02000000" + txid)

    # -- client surface -----------------------------------------------------

    def _record(self, method: str, params: Any = None) -> None:
        self.calls.append((method, params))
        count = sum(1 for name, _ in self.calls if name == method)
        if self.fail_on.get(method) == count:
            raise ElectrumConnectionError(f"Connection lost during {method}")

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def connect(self) -> None:
        self.connect_thread = threading.current_thread().name
        self._record("connect")
        self.connected = True

    async def close(self) -> None:
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        self.closed = True
        self.connected = False

    async def ping(self) -> None:
        self._record("ping")

    async def block_headers_subscribe(self) -> BlockHeader:
        self._record("block_headers_subscribe")
        return self.tip

    def block_headers_pop(self) -> BlockHeader | None:
        latest = None
        while self.pending_headers:
            latest = self.pending_headers.popleft()
        return latest

    async def batch_estimate_fee(self, targets: Iterable[int]) -> list[float]:
        targets = list(targets)
        self._record("batch_estimate_fee", targets)
        return list(self.fee_rates)

    async def batch_script_get_history(self, scripts: Iterable[bytes]) -> list[list[HistoryEntry]]:
        scripts = list(scripts)
        self._record("batch_script_get_history", scripts)
        await asyncio.sleep(0)
        return [list(self.histories.get(script, [])) for script in scripts]

    async def batch_script_list_unspent(self, scripts: Iterable[bytes]) -> list[list[UnspentEntry]]:
        scripts = list(scripts)
        self._record("batch_script_list_unspent", scripts)
        await asyncio.sleep(0)
        return [list(self.unspents.get(script, [])) for script in scripts]

    async def batch_transaction_get(self, txids: Iterable[str]) -> list[str]:
        txids = list(txids)
        self._record("batch_transaction_get", txids)
        return [self.transactions[txid] for txid in txids]


def make_watcher(
    client: FakeElectrumClient,
    descriptor: FakeDescriptor | None = None,
    channel: EventChannel | None = None,
    **settings: Any,
) -> tuple[ElectrumWatcher, EventChannel]:
    channel = channel or EventChannel()
    watcher = ElectrumWatcher(
        descriptor or FakeDescriptor(),
        channel,
        settings=WatcherSettings(**settings),
        client_factory=lambda endpoint: client,  # type: ignore[arg-type,return-value]
    )
    return watcher, channel


async def run_until_complete(
    watcher: ElectrumWatcher, channel: EventChannel, timeout: float = 5.0
) -> list[WatchMsg]:
    """Run the watcher on the current loop until Complete or Error, then stop it."""
    task = asyncio.create_task(watcher.run())
    events: list[WatchMsg] = []
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not any(isinstance(e, (Complete, Error)) for e in events):
        if loop.time() > deadline:
            break
        await asyncio.sleep(0.01)
        events.extend(channel.drain())

    watcher.stop()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    events.extend(channel.drain())
    return events
