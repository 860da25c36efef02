"""
Wallet data models produced by the synchronization scan.
"""

from __future__ import annotations

from pydantic import Field
from pydantic.dataclasses import dataclass

from hdwatch.bitcoin import block_header_hash, parse_block_header


@dataclass(frozen=True)
class BlockHeader:
    """Chain tip as announced by the indexing service."""

    height: int = Field(ge=0)
    header_hex: str = Field(min_length=160, max_length=160)

    @property
    def raw(self) -> bytes:
        return bytes.fromhex(self.header_hex)

    @property
    def block_hash(self) -> str:
        return block_header_hash(self.raw)

    @property
    def prev_hash(self) -> str:
        return str(parse_block_header(self.raw)["prev_hash"])

    @property
    def timestamp(self) -> int:
        return int(parse_block_header(self.raw)["timestamp"])


@dataclass(frozen=True, order=True)
class HistoryRecord:
    """A transaction touching one wallet address."""

    txid: str
    height: int  # <= 0 means unconfirmed (-1: has unconfirmed parents)
    address: str
    script_pubkey: str  # hex
    index: int  # address index within the branch
    change: bool  # True for the internal (change) branch
    fee: int | None = None  # Only reported by servers for mempool entries

    @property
    def is_confirmed(self) -> bool:
        return self.height > 0


@dataclass(frozen=True, order=True)
class UtxoRecord:
    """An unspent output paying to a wallet address."""

    txid: str
    height: int  # 0 for mempool outputs
    pos: int  # output index (vout)
    value: int  # satoshis
    address: str
    script_pubkey: str  # hex
    index: int
    change: bool

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.pos}"

    @property
    def is_confirmed(self) -> bool:
        return self.height > 0
