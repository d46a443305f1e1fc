"""Tracks a session's pending and live wants."""

from __future__ import annotations

import random
import time
from typing import Callable, Hashable, Iterable, Optional

from .cidqueue import CidQueue

# Maximum drift between the live-wants ordering list and the live-wants map
# before the ordering list is compacted.
LIVE_WANTS_ORDER_GC_LIMIT = 32


class SessionWants:
    """Wants waiting to be sent (to fetch) and wants awaiting a block (live)."""

    def __init__(
        self,
        broadcast_limit: int,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.broadcast_limit = broadcast_limit
        self._to_fetch = CidQueue()
        self._live: dict[Hashable, float] = {}
        self._live_order: list[Hashable] = []
        self._clock = clock
        self._rng = rng or random.Random()

    def __str__(self) -> str:
        return f"{len(self._to_fetch)} pending / {len(self._live)} live"

    def blocks_requested(self, keys: Iterable[Hashable]) -> None:
        """Queue newly requested CIDs for fetching."""
        for k in keys:
            self._to_fetch.push(k)

    def get_next_wants(self) -> list:
        """Move CIDs from the fetch queue to live, up to the broadcast limit."""
        now = self._clock()
        live = []
        to_add = self.broadcast_limit - len(self._live)
        while to_add > 0 and len(self._to_fetch) > 0:
            c = self._to_fetch.pop()
            live.append(c)
            self._live_order.append(c)
            self._live[c] = now
            to_add -= 1
        return live

    def wants_sent(self, keys: Iterable[Hashable]) -> None:
        """Mark pending CIDs as live once they have been sent to a peer."""
        now = self._clock()
        for c in keys:
            if c not in self._live and c in self._to_fetch:
                self._to_fetch.remove(c)
                self._live_order.append(c)
                self._live[c] = now

    def blocks_received(self, keys: Iterable[Hashable]) -> tuple[list, float]:
        """Drop received CIDs from the wants.

        Returns the CIDs that were wanted and their total latency in seconds.
        """
        keys = list(keys)
        wanted: list = []
        total_latency = 0.0
        if not keys:
            return wanted, total_latency

        now = self._clock()
        for c in keys:
            if self.is_wanted(c):
                wanted.append(c)
                sent_at = self._live.pop(c, None)
                if sent_at is not None:
                    total_latency += now - sent_at
                self._to_fetch.remove(c)

        if len(self._live_order) - len(self._live) > LIVE_WANTS_ORDER_GC_LIMIT:
            self._live_order = [c for c in self._live_order if c in self._live]

        return wanted, total_latency

    def prepare_broadcast(self) -> list:
        """Reset sent times of live wants and return them in order, up to the limit."""
        now = self._clock()
        live = []
        for c in self._live_order:
            if c in self._live:
                self._live[c] = now
                live.append(c)
                if len(live) == self.broadcast_limit:
                    break
        return live

    def cancel_pending(self, keys: Iterable[Hashable]) -> None:
        """Remove CIDs from the fetch queue."""
        for k in keys:
            self._to_fetch.remove(k)

    def live_wants(self) -> list:
        return list(self._live)

    def random_live_want(self) -> Optional[Hashable]:
        """Return a random live want, or None if there are none."""
        if not self._live:
            return None
        return self._rng.choice(list(self._live))

    def has_live_wants(self) -> bool:
        return bool(self._live)

    def is_wanted(self, cid: Hashable) -> bool:
        """True if the CID is live or waiting to be fetched."""
        return cid in self._live or cid in self._to_fetch