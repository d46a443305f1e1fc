"""A single block-exchange session: wants, broadcasts, idle ticks and provider search."""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Hashable, Iterable, Optional, Sequence, Union

from .sessionwants import SessionWants
from .sessionwantsender import SessionWantSender

log = logging.getLogger("swapsession.session")

# Maximum number of want-haves sent in a single broadcast.
BROADCAST_LIVE_WANTS_LIMIT = 64
# Default base delay (seconds) used to compute the idle tick once latency is known.
DEFAULT_BASE_TICK_DELAY = 0.5


class _OpType(Enum):
    RECEIVE = auto()
    WANT = auto()
    CANCEL = auto()
    BROADCAST = auto()
    WANTS_SENT = auto()
    TICK_DELAY = auto()


@dataclass(frozen=True)
class _Op:
    kind: _OpType
    keys: tuple = ()
    delay: float = 0.0


_STOP = object()


@dataclass
class LatencyTracker:
    """Average latency between sending a want and receiving its block."""

    total_latency: float = 0.0
    count: int = 0

    def has_latency(self) -> bool:
        return self.total_latency > 0 and self.count > 0

    def average_latency(self) -> float:
        """Average latency in seconds; raises ZeroDivisionError with no samples."""
        if self.count == 0:
            raise ZeroDivisionError("no latency samples recorded")
        return self.total_latency / self.count

    def receive_update(self, count: int, total_latency: float) -> None:
        self.total_latency += total_latency
        self.count += count


class Session:
    """Holds the state of one transfer and runs its event loop in a thread.

    Collaborators:

    * ``session_manager``: ``remove_session(session_id)`` and
      ``cancel_session_wants(session_id, wants)``.
    * ``session_peer_manager``: the session's peers (see SessionPeerManager).
    * ``provider_finder``: ``find_providers_async(cid)`` returning an iterable
      of peer IDs that provide the CID.
    * ``session_interest_manager``: a SessionInterestManager.
    * ``peer_manager``: ``register_session``, ``unregister_session``,
      ``send_wants(peer, want_blocks, want_haves)`` and
      ``broadcast_want_haves(wants)``.
    * ``block_presence_manager``: tracks HAVE / DONT_HAVE per peer.

    Delays are in seconds. ``periodic_search_delay`` is either a number or a
    callable giving the next wait time.
    """

    def __init__(
        self,
        session_manager: Any,
        session_id: int,
        session_peer_manager: Any,
        provider_finder: Any,
        session_interest_manager: Any,
        peer_manager: Any,
        block_presence_manager: Any,
        initial_search_delay: float,
        periodic_search_delay: Union[float, Callable[[], float]],
        self_peer: str = "",
        rng: Optional[random.Random] = None,
    ) -> None:
        self.id = session_id
        self.self_peer = self_peer
        self._sm = session_manager
        self._sprm = session_peer_manager
        self._provider_finder = provider_finder
        self._sim = session_interest_manager
        self._pm = peer_manager

        self._sw = SessionWants(BROADCAST_LIVE_WANTS_LIMIT, rng=rng)
        self._sws = SessionWantSender(
            session_id,
            peer_manager,
            session_peer_manager,
            session_manager,
            block_presence_manager,
            self.on_wants_sent,
            self.on_peers_exhausted,
            rng=rng,
        )
        self._latency = LatencyTracker()

        self._initial_search_delay = initial_search_delay
        if callable(periodic_search_delay):
            self._next_periodic_wait = periodic_search_delay
        else:
            self._next_periodic_wait = lambda: periodic_search_delay
        self._base_tick_delay = DEFAULT_BASE_TICK_DELAY
        self._consecutive_ticks = 0
        self._idle_deadline: Optional[float] = None
        self._periodic_deadline: Optional[float] = None

        self._incoming: queue.Queue = queue.Queue()
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"session-{session_id}", daemon=True
        )
        self._thread.start()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()

    # Public interface

    def shutdown(self) -> None:
        """Stop the session; its event loop cleans up and removes it from the manager."""
        if not self._stopped.is_set():
            self._stopped.set()
            self._incoming.put(_STOP)

    def receive_from(
        self,
        sender: str,
        blocks: Optional[Sequence[Hashable]],
        haves: Optional[Sequence[Hashable]],
        dont_haves: Optional[Sequence[Hashable]],
    ) -> None:
        """Handle a message from a peer, keeping only keys this session cares about."""
        blocks, haves, dont_haves = self._sim.filter_session_interested(
            self.id, blocks or (), haves or (), dont_haves or ()
        )
        self._log_receive_from(sender, blocks, haves, dont_haves)

        self._sws.update(sender, blocks, haves, dont_haves)

        if blocks:
            self._enqueue(_Op(_OpType.RECEIVE, tuple(blocks)))

    def want_blocks(self, keys: Iterable[Hashable]) -> None:
        """Ask the session to fetch the given blocks."""
        self._enqueue(_Op(_OpType.WANT, tuple(keys)))

    def cancel_wants(self, keys: Iterable[Hashable]) -> None:
        """Cancel a request for the given blocks."""
        self._enqueue(_Op(_OpType.CANCEL, tuple(keys)))

    def set_base_tick_delay(self, delay: float) -> None:
        """Change the base delay (seconds) used to compute idle ticks."""
        self._enqueue(_Op(_OpType.TICK_DELAY, delay=delay))

    def on_wants_sent(
        self, peer: str, want_blocks: Sequence[Hashable], want_haves: Sequence[Hashable]
    ) -> None:
        """Called by the want sender when wants were sent to a peer."""
        self._enqueue(_Op(_OpType.WANTS_SENT, tuple(want_blocks) + tuple(want_haves)))

    def on_peers_exhausted(self, keys: Sequence[Hashable]) -> None:
        """Called when every available peer lacks the given wants."""
        self._enqueue(_Op(_OpType.BROADCAST, tuple(keys)))

    # Event loop

    def _enqueue(self, op: _Op) -> None:
        if not self._stopped.is_set():
            self._incoming.put(op)

    def _run(self) -> None:
        self._sws.start()
        now = time.monotonic()
        self._idle_deadline = now + self._initial_search_delay
        self._periodic_deadline = now + self._next_periodic_wait()
        while True:
            self._fire_timers()
            try:
                item = self._incoming.get(timeout=self._next_timeout())
            except queue.Empty:
                continue
            if item is _STOP:
                self._handle_shutdown()
                return
            self._handle_op(item)

    def _next_timeout(self) -> Optional[float]:
        deadlines = [d for d in (self._idle_deadline, self._periodic_deadline) if d is not None]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - time.monotonic())

    def _fire_timers(self) -> None:
        now = time.monotonic()
        if self._idle_deadline is not None and self._idle_deadline <= now:
            self._idle_deadline = None
            # No blocks received for a while: broadcast.
            self._broadcast(None)
        now = time.monotonic()
        if self._periodic_deadline is not None and self._periodic_deadline <= now:
            self._periodic_deadline = None
            self._handle_periodic_search()

    def _handle_op(self, op: _Op) -> None:
        if op.kind is _OpType.RECEIVE:
            self._handle_receive(op.keys)
        elif op.kind is _OpType.WANT:
            self._want_blocks(op.keys)
        elif op.kind is _OpType.CANCEL:
            self._sw.cancel_pending(op.keys)
            self._sws.cancel(op.keys)
        elif op.kind is _OpType.WANTS_SENT:
            self._sw.wants_sent(op.keys)
        elif op.kind is _OpType.BROADCAST:
            self._broadcast(list(op.keys))
        elif op.kind is _OpType.TICK_DELAY:
            self._base_tick_delay = op.delay
        else:
            raise ValueError(f"unhandled operation {op.kind}")

    def _broadcast(self, wants: Optional[list]) -> None:
        """Send want-haves to all peers and, on the first tick, search for providers."""
        if wants is None:
            wants = self._sw.prepare_broadcast()

        self._broadcast_want_haves(wants)

        # Only search for providers on the first of consecutive ticks.
        if wants and self._consecutive_ticks == 0:
            log.debug("find more peers: session %d cid %s pending %d", self.id, wants[0], len(wants))
            self._find_more_peers(wants[0])
        self._reset_idle_tick()

        if self._sw.has_live_wants():
            self._consecutive_ticks += 1

    def _handle_periodic_search(self) -> None:
        random_want = self._sw.random_live_want()
        if random_want is None:
            return
        self._find_more_peers(random_want)
        self._broadcast_want_haves([random_want])
        self._periodic_deadline = time.monotonic() + self._next_periodic_wait()

    def _find_more_peers(self, cid: Hashable) -> None:
        def search() -> None:
            for peer in self._provider_finder.find_providers_async(cid):
                if self._stopped.is_set():
                    return
                # A provider is as good as a HAVE from that peer.
                self._sws.update(peer, None, [cid], None)

        threading.Thread(target=search, name=f"provider-search-{self.id}", daemon=True).start()

    def _handle_shutdown(self) -> None:
        self._idle_deadline = None
        self._periodic_deadline = None
        self._sprm.shutdown()
        self._sws.shutdown()
        self._sm.remove_session(self.id)

    def _handle_receive(self, keys: Sequence[Hashable]) -> None:
        wanted, total_latency = self._sw.blocks_received(keys)
        if not wanted:
            return
        self._latency.receive_update(len(wanted), total_latency)
        self._sim.remove_session_wants(self.id, wanted)
        self._consecutive_ticks = 0
        self._reset_idle_tick()

    def _want_blocks(self, keys: Sequence[Hashable]) -> None:
        if keys:
            self._sim.record_session_interest(self.id, keys)
            self._sw.blocks_requested(keys)
            self._sws.add(keys)

        # Once peers are known the want sender takes care of sending wants.
        if self._sprm.peers_discovered():
            return

        next_wants = self._sw.get_next_wants()
        if next_wants:
            log.info("no peers, broadcasting: session %d want-count %d", self.id, len(next_wants))
            self._broadcast_want_haves(next_wants)

    def _broadcast_want_haves(self, wants: list) -> None:
        log.debug("broadcast want-haves: session %d cids %s", self.id, wants)
        self._pm.broadcast_want_haves(wants)

    def _reset_idle_tick(self) -> None:
        """Initially a fixed delay; later base delay plus latency, backed off per tick."""
        if self._latency.has_latency():
            tick_delay = self._base_tick_delay + 3 * self._latency.average_latency()
        else:
            tick_delay = self._initial_search_delay
        tick_delay *= 1 + self._consecutive_ticks
        self._idle_deadline = time.monotonic() + tick_delay

    def _log_receive_from(
        self, sender: str, blocks: list, haves: list, dont_haves: list
    ) -> None:
        if not log.isEnabledFor(logging.DEBUG):
            return
        for kind, keys in (("block", blocks), ("HAVE", haves), ("DONT_HAVE", dont_haves)):
            for c in keys:
                log.debug(
                    "<- %s local=%s from=%s cid=%s session=%d",
                    kind, self.self_peer, sender, c, self.id,
                )