"""Round-robin selection algorithm."""
from __future__ import annotations

import threading
from typing import Generic, Sequence, TypeVar

T = TypeVar("T")


class RoundRobin(Generic[T]):
    """Thread-safe round-robin cursor over a fixed sequence.

    The cursor only ever grows; the item is chosen with ``cursor % len(items)``
    so every caller claims a distinct cursor value and the sequence is walked
    in order with no skips.
    """

    def __init__(self, items: Sequence[T]):
        if not items:
            raise ValueError("round-robin needs at least one item")
        self._items: tuple[T, ...] = tuple(items)
        self._lock = threading.Lock()
        self._cursor = 0

    @property
    def items(self) -> tuple[T, ...]:
        return self._items

    @property
    def cursor(self) -> int:
        """Next cursor value to be handed out."""
        with self._lock:
            return self._cursor

    def advance(self) -> int:
        """Claim the current cursor value and move the cursor forward by one."""
        with self._lock:
            claimed = self._cursor
            self._cursor += 1
        return claimed

    def pick(self) -> T:
        """Pick next item using round-robin."""
        return self._items[self.advance() % len(self._items)]

    def __len__(self) -> int:
        return len(self._items)
