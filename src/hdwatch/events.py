"""
Messages emitted by the electrum watcher and the channel carrying them.

The channel is one-directional: the watcher thread only sends, the consumer
only receives. The consumer closes the channel when it goes away; the next
send then raises ``ChannelClosedError`` and the watcher stops. The watcher
thread closes it too when it exits, which ends iteration on the consumer side.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field

from hdwatch.models import BlockHeader, HistoryRecord, UtxoRecord

# How often a blocked iterator rechecks whether the channel was closed
ITER_POLL_INTERVAL = 0.1


class ChannelClosedError(Exception):
    """The event channel was closed."""


@dataclass(frozen=True)
class Connecting:
    endpoint: str = ""


@dataclass(frozen=True)
class Connected:
    endpoint: str = ""


@dataclass(frozen=True)
class LastBlock:
    header: BlockHeader


@dataclass(frozen=True)
class FeeEstimate:
    """Fee rates in BTC/kvB for 1, 2 and 3 block targets (-1 when unknown)."""

    rate_1: float
    rate_2: float
    rate_3: float

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.rate_1, self.rate_2, self.rate_3)


@dataclass(frozen=True)
class HistoryBatch:
    records: list[HistoryRecord]
    offset: int
    change: bool = False


@dataclass(frozen=True)
class UtxoBatch:
    records: list[UtxoRecord]
    offset: int
    change: bool = False


@dataclass(frozen=True)
class TxBatch:
    """Raw transactions (txid -> hex) and overall fetch progress in (0, 1]."""

    transactions: dict[str, str]
    progress: float


@dataclass(frozen=True)
class Complete:
    """Initial sync finished. Maps branch (change flag) to highest used index."""

    highest_used: dict[bool, int | None] = field(default_factory=dict)


@dataclass(frozen=True)
class LastBlockUpdate:
    header: BlockHeader


@dataclass(frozen=True)
class Error:
    """Terminal failure; no further events follow."""

    cause: BaseException

    def __str__(self) -> str:
        return f"{type(self.cause).__name__}: {self.cause}"


WatchMsg = (
    Connecting
    | Connected
    | LastBlock
    | FeeEstimate
    | HistoryBatch
    | UtxoBatch
    | TxBatch
    | Complete
    | LastBlockUpdate
    | Error
)


class EventChannel:
    """
    Thread-safe FIFO of watcher messages.

    Args:
        maxsize: Bound on queued messages (0 = unbounded). A full bounded
            channel blocks the sender until the consumer catches up.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: queue.Queue[WatchMsg] = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    def offer(self, msg: WatchMsg, timeout: float = 0.1) -> bool:
        """Queue ``msg``; False if a bounded channel stayed full for ``timeout``."""
        if self._closed.is_set():
            raise ChannelClosedError("event channel is closed")
        try:
            self._queue.put(msg, timeout=timeout)
        except queue.Full:
            return False
        return True

    def send(self, msg: WatchMsg) -> None:
        while not self.offer(msg):
            pass

    def receive(self, timeout: float | None = None) -> WatchMsg | None:
        """Next message, or None if none arrived within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def try_receive(self) -> WatchMsg | None:
        try:
            return self._queue.get_nowait()
        except queue.Empty:
            return None

    def drain(self) -> list[WatchMsg]:
        """All messages queued right now."""
        messages: list[WatchMsg] = []
        while (msg := self.try_receive()) is not None:
            messages.append(msg)
        return messages

    def __iter__(self) -> Iterator[WatchMsg]:
        """
        Block on messages until a terminal ``Error`` has been yielded, or
        until the channel is closed and everything queued before the close
        has been received. The watcher thread closes the channel on exit.
        """
        while True:
            msg = self.receive(timeout=ITER_POLL_INTERVAL)
            if msg is None:
                if self.closed:
                    return
                continue
            yield msg
            if isinstance(msg, Error):
                return

    def close(self) -> None:
        """Reject further sends. Queued messages can still be received."""
        self._closed.set()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()
