"""Fixed-capacity ring used by every bounded collection in durable records."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class Ring(Generic[T]):
    """Insertion-ordered list capped at ``maxlen`` items, evicting the oldest.

    ``unique=True`` makes ``push`` a no-op for items already present, which
    is what the seen-signal and wallet-prefix rings need.
    """

    def __init__(self, maxlen: int, items: Iterable[T] = (), *, unique: bool = False) -> None:
        if maxlen <= 0:
            raise ValueError("maxlen must be positive")
        self._maxlen = maxlen
        self._unique = unique
        self._items: list[T] = []
        for item in items:
            self.push(item)

    @property
    def maxlen(self) -> int:
        return self._maxlen

    def push(self, item: T) -> bool:
        """Append ``item``; return False if skipped as a duplicate."""
        if self._unique and item in self._items:
            return False
        self._items.append(item)
        if len(self._items) > self._maxlen:
            del self._items[: len(self._items) - self._maxlen]
        return True

    def extend(self, items: Iterable[T]) -> None:
        for item in items:
            self.push(item)

    def to_list(self) -> list[T]:
        return list(self._items)

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Ring):
            return self._items == other._items and self._maxlen == other._maxlen
        return NotImplemented

    def __repr__(self) -> str:
        return f"Ring(maxlen={self._maxlen}, items={self._items!r})"
