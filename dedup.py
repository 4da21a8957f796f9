# dedup.py
"""
Bounded, insertion-ordered window of already processed transaction signatures.
Oldest signatures are evicted first once the window exceeds its capacity.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Iterable, Iterator, List, Set

DEFAULT_CAPACITY = 1000


class DeduplicationWindow:
    """FIFO-evicting set of transaction identifiers."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._order: Deque[str] = deque(maxlen=capacity)
        self._ids: Set[str] = set()

    @classmethod
    def from_iterable(cls, ids: Iterable[str], capacity: int = DEFAULT_CAPACITY) -> "DeduplicationWindow":
        """Rebuild a window from a persisted list (oldest first), keeping the newest `capacity` ids."""
        window = cls(capacity)
        for sig in ids:
            if sig:
                window.record(str(sig))
        return window

    def seen(self, sig: str) -> bool:
        return sig in self._ids

    def record(self, sig: str) -> None:
        """Insert `sig`; re-recording a known id keeps its original position."""
        if sig in self._ids:
            return
        if len(self._order) == self.capacity:
            # deque(maxlen) drops the left end on append
            self._ids.discard(self._order[0])
        self._order.append(sig)
        self._ids.add(sig)

    def to_list(self) -> List[str]:
        """Ordered view, oldest first (the persisted format)."""
        return list(self._order)

    def __contains__(self, sig: object) -> bool:
        return sig in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._order)
