"""
Consumer-side wallet view built from the watcher's event stream.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from hdwatch.events import (
    Complete,
    Connected,
    Connecting,
    Error,
    FeeEstimate,
    HistoryBatch,
    LastBlock,
    LastBlockUpdate,
    TxBatch,
    UtxoBatch,
    WatchMsg,
)
from hdwatch.models import BlockHeader, HistoryRecord, UtxoRecord


@dataclass
class Balance:
    confirmed: int = 0
    unconfirmed: int = 0

    @property
    def total(self) -> int:
        return self.confirmed + self.unconfirmed


@dataclass
class WalletState:
    """
    Wallet state folded from watcher events.

    Feed every received message to ``apply``. The view is only complete
    once ``synced`` is True; ``error`` holds the terminal failure, if any.
    """

    endpoint: str = ""
    connected: bool = False
    tip: BlockHeader | None = None
    fee_estimate: FeeEstimate | None = None
    history: dict[tuple[str, bool, int], HistoryRecord] = field(default_factory=dict)
    utxos: dict[str, UtxoRecord] = field(default_factory=dict)
    transactions: dict[str, str] = field(default_factory=dict)
    progress: float = 0.0
    highest_used: dict[bool, int | None] = field(default_factory=dict)
    synced: bool = False
    error: BaseException | None = None

    def apply(self, msg: WatchMsg) -> None:
        if isinstance(msg, Connecting):
            self.endpoint = msg.endpoint
            self.connected = False
        elif isinstance(msg, Connected):
            self.connected = True
        elif isinstance(msg, (LastBlock, LastBlockUpdate)):
            self.tip = msg.header
        elif isinstance(msg, FeeEstimate):
            self.fee_estimate = msg
        elif isinstance(msg, HistoryBatch):
            for record in msg.records:
                self.history[(record.txid, record.change, record.index)] = record
        elif isinstance(msg, UtxoBatch):
            for utxo in msg.records:
                self.utxos[utxo.outpoint] = utxo
        elif isinstance(msg, TxBatch):
            self.transactions.update(msg.transactions)
            self.progress = max(self.progress, msg.progress)
        elif isinstance(msg, Complete):
            self.highest_used = dict(msg.highest_used)
            self.synced = True
        elif isinstance(msg, Error):
            self.error = msg.cause
            self.connected = False
        else:
            logger.warning(f"Ignoring unknown watcher message: {msg!r}")

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def txids(self) -> set[str]:
        """Transaction ids referenced by history or unspent outputs."""
        return {txid for txid, _, _ in self.history} | {u.txid for u in self.utxos.values()}

    def missing_transactions(self) -> set[str]:
        return self.txids - self.transactions.keys()

    def balance(self) -> Balance:
        balance = Balance()
        for utxo in self.utxos.values():
            if utxo.is_confirmed:
                balance.confirmed += utxo.value
            else:
                balance.unconfirmed += utxo.value
        return balance

    def next_unused_index(self, change: bool = False) -> int:
        highest = self.highest_used.get(change)
        return 0 if highest is None else highest + 1

    def confirmations(self, txid: str) -> int:
        """Confirmations of a wallet transaction at the current tip (0 if unconfirmed)."""
        heights = [r.height for r in self.history.values() if r.txid == txid]
        if not heights or self.tip is None:
            return 0
        height = max(heights)
        if height <= 0:
            return 0
        return max(self.tip.height - height + 1, 0)
