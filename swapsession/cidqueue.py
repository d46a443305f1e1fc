"""A FIFO queue of CIDs that ignores duplicates and supports cheap removal."""

from __future__ import annotations

from collections import deque
from typing import Hashable


class CidQueue:
    """FIFO of unique CIDs; removed entries are dropped lazily."""

    def __init__(self) -> None:
        self._elems: deque[Hashable] = deque()
        self._members: set[Hashable] = set()

    def pop(self) -> Hashable:
        """Remove and return the oldest CID still in the queue.

        Raises IndexError if the queue is empty.
        """
        while self._elems:
            out = self._elems.popleft()
            if out in self._members:
                self._members.remove(out)
                return out
        raise IndexError("pop from an empty CidQueue")

    def cids(self) -> list:
        """Return a copy of the queued CIDs in order."""
        if len(self._elems) > len(self._members):
            self._elems = deque(c for c in self._elems if c in self._members)
        return list(self._elems)

    def push(self, cid: Hashable) -> None:
        if cid not in self._members:
            self._members.add(cid)
            self._elems.append(cid)

    def remove(self, cid: Hashable) -> None:
        self._members.discard(cid)

    def __contains__(self, cid: object) -> bool:
        return cid in self._members

    def __len__(self) -> int:
        return len(self._members)