"""Per-want record of which peers have the block and who to ask next."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

from .peerresponsetracker import PeerResponseTracker


class BlockPresence(IntEnum):
    """Whether a peer has a block; higher values are better candidates."""

    DONT_HAVE = 0
    UNKNOWN = 1
    HAVE = 2


@dataclass
class WantInfo:
    """Tracks HAVE / DONT_HAVE responses for a want and picks the best peer."""

    peer_response_tracker: PeerResponseTracker
    block_presence: dict[str, BlockPresence] = field(default_factory=dict)
    sent_to: Optional[str] = None
    best_peer: Optional[str] = None
    exhausted: bool = False

    def set_peer_block_presence(self, peer: str, presence: BlockPresence) -> None:
        self.block_presence[peer] = presence
        self.calculate_best_peer()
        # A HAVE means at least one peer has the block again.
        if presence == BlockPresence.HAVE:
            self.exhausted = False

    def remove_peer(self, peer: str) -> None:
        if peer == self.sent_to:
            self.sent_to = None
        self.block_presence.pop(peer, None)
        self.calculate_best_peer()

    def calculate_best_peer(self) -> None:
        """Choose the peer with the best block presence, breaking ties by response rank."""
        best_bp = BlockPresence.DONT_HAVE
        best_peer: Optional[str] = None
        count_with_best = 0
        for p, bp in self.block_presence.items():
            if bp > best_bp:
                best_bp = bp
                best_peer = p
                count_with_best = 1
            elif bp == best_bp:
                count_with_best += 1
        self.best_peer = best_peer

        if best_peer is None or count_with_best <= 1:
            return

        candidates = [p for p, bp in self.block_presence.items() if bp == best_bp]
        self.best_peer = self.peer_response_tracker.choose(candidates)