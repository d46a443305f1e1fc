"""Tracks which peers have been sent a want-block for which CIDs."""

from __future__ import annotations

from typing import Hashable, Iterable


class SentWantBlocksTracker:
    def __init__(self) -> None:
        self._sent: dict[str, set[Hashable]] = {}

    def add_sent_want_blocks_to(self, peer: str, keys: Iterable[Hashable]) -> None:
        self._sent.setdefault(peer, set()).update(keys)

    def have_sent_want_block_to(self, peer: str, cid: Hashable) -> bool:
        return cid in self._sent.get(peer, ())