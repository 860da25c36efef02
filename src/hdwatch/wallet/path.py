"""
BIP32 derivation paths.

A path is an ordered sequence of child numbers, each either hardened or
unhardened. Paths are written ``m/84'/0'/0'/0/5``; ``h`` is accepted as an
alternative hardened marker.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

HARDENED_OFFSET = 0x80000000


@dataclass(frozen=True, order=True)
class ChildNumber:
    """A single derivation step."""

    index: int
    hardened: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.index < HARDENED_OFFSET:
            raise ValueError(f"Child index out of range: {self.index}")

    @classmethod
    def from_int(cls, value: int) -> ChildNumber:
        """Build from the raw 32-bit BIP32 child number."""
        if value >= HARDENED_OFFSET:
            return cls(value - HARDENED_OFFSET, hardened=True)
        return cls(value)

    @classmethod
    def parse(cls, part: str) -> ChildNumber:
        hardened = part.endswith(("'", "h", "H"))
        index_str = part.rstrip("'hH")
        if not index_str.isdigit():
            raise ValueError(f"Invalid path component: {part!r}")
        return cls(int(index_str), hardened=hardened)

    def to_int(self) -> int:
        return self.index + HARDENED_OFFSET if self.hardened else self.index

    def __str__(self) -> str:
        return f"{self.index}'" if self.hardened else str(self.index)


@dataclass(frozen=True)
class DerivationPath:
    """Ordered sequence of derivation steps relative to some parent key."""

    steps: tuple[ChildNumber, ...] = ()

    @classmethod
    def parse(cls, path: str) -> DerivationPath:
        """
        Parse path notation (e.g., "m/84'/0'/0'/0/0").

        The leading ``m`` is optional, so relative paths like ``0/5`` parse too.
        """
        parts = path.strip().split("/")
        if parts and parts[0] in ("m", "M"):
            parts = parts[1:]
        return cls(tuple(ChildNumber.parse(part) for part in parts if part))

    @classmethod
    def from_ints(cls, values: Iterable[int]) -> DerivationPath:
        return cls(tuple(ChildNumber.from_int(v) for v in values))

    def child(self, index: int, hardened: bool = False) -> DerivationPath:
        return DerivationPath((*self.steps, ChildNumber(index, hardened)))

    def extend(self, other: DerivationPath | Iterable[ChildNumber]) -> DerivationPath:
        extra = other.steps if isinstance(other, DerivationPath) else tuple(other)
        return DerivationPath(self.steps + extra)

    @property
    def is_unhardened(self) -> bool:
        """True when every step can be derived from a public key alone."""
        return not any(step.hardened for step in self.steps)

    def to_ints(self) -> list[int]:
        return [step.to_int() for step in self.steps]

    def __iter__(self) -> Iterator[ChildNumber]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __str__(self) -> str:
        return "/".join(["m", *(str(step) for step in self.steps)])
