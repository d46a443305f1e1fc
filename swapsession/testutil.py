"""Helpers for generating blocks, CIDs, peers and session IDs."""

from __future__ import annotations

import hashlib
import itertools
import os
from dataclasses import dataclass
from typing import Iterable, Sequence

_block_seq = itertools.count()
_session_seq = itertools.count(1)


@dataclass(frozen=True)
class Block:
    """A block of raw data addressed by its content identifier."""

    data: bytes
    cid: str

    @classmethod
    def from_data(cls, data: bytes) -> "Block":
        """Build a block whose CID is derived from the data's SHA-256 digest."""
        return cls(data=bytes(data), cid=hashlib.sha256(data).hexdigest())


def generate_blocks_of_size(n: int, size: int) -> list[Block]:
    """Generate ``n`` blocks of ``size`` random bytes each."""
    return [Block.from_data(os.urandom(size)) for _ in range(n)]


def generate_cids(n: int) -> list[str]:
    """Produce ``n`` CIDs, unique across calls."""
    return [Block.from_data(str(next(_block_seq)).encode()).cid for _ in range(n)]


def generate_peers(n: int) -> list[str]:
    """Create ``n`` peer IDs named after their position."""
    return [str(i) for i in range(n)]


def generate_session_id() -> int:
    """Return a new, unique session identifier."""
    return next(_session_seq)


def contains_peer(peers: Iterable[str], peer: str) -> bool:
    return peer in peers


def index_of(blocks: Sequence[Block], cid: str) -> int:
    """Return the position of the block with ``cid``, or -1 if absent."""
    return next((i for i, b in enumerate(blocks) if b.cid == cid), -1)


def contains_block(blocks: Sequence[Block], block: Block) -> bool:
    return index_of(blocks, block.cid) != -1


def contains_key(keys: Iterable[str], cid: str) -> bool:
    return cid in keys


def match_keys_ignore_order(keys1: Sequence[str], keys2: Sequence[str]) -> bool:
    """True if both lists have the same length and every key of the first is in the second."""
    return len(keys1) == len(keys2) and all(k in keys2 for k in keys1)


def match_peers_ignore_order(peers1: Sequence[str], peers2: Sequence[str]) -> bool:
    """True if both lists have the same length and every peer of the first is in the second."""
    return len(peers1) == len(peers2) and all(p in peers2 for p in peers1)