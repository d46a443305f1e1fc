"""Decides which peers get want-block and want-have requests for a session.

For each want a single optimistic want-block goes to one peer and want-haves
go to every other peer in the session. The peer for the want-block is chosen
from what each peer said about the block (HAVE / DONT_HAVE / unknown) and
from how often each peer was first to deliver a block.
"""

from __future__ import annotations

import logging
import random
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterable, Optional, Sequence

from .peerresponsetracker import PeerResponseTracker
from .sentwantblockstracker import SentWantBlocksTracker
from .wantinfo import BlockPresence, WantInfo

log = logging.getLogger("swapsession.sessionwantsender")

# Maximum number of pending changes before adding a change blocks.
CHANGES_BUFFER_SIZE = 128
# A peer that sends this many DONT_HAVEs in a row is pruned from the session.
PEER_DONT_HAVE_LIMIT = 16


@dataclass(frozen=True)
class _Update:
    """A message received by the session."""

    sender: str
    blocks: tuple
    haves: tuple
    dont_haves: tuple


@dataclass(frozen=True)
class _Change:
    """New wants, cancelled wants, a received message or a peer availability change."""

    add: tuple = ()
    cancel: tuple = ()
    update: Optional[_Update] = None
    availability: Optional[tuple[str, bool]] = None


@dataclass
class _WantSets:
    want_blocks: dict = field(default_factory=dict)
    want_haves: dict = field(default_factory=dict)


class SessionWantSender:
    """Sends want-have and want-block requests to the peers of one session.

    Collaborators:

    * ``peer_manager``: ``register_session(peer, session)``,
      ``unregister_session(session_id)`` and
      ``send_wants(peer, want_blocks, want_haves)``.
    * ``session_peer_manager``: ``add_peer``, ``remove_peer``, ``peers``,
      ``has_peers`` and ``protect_connection``.
    * ``canceller``: ``cancel_session_wants(session_id, wants)``.
    * ``block_presence_manager``: ``peer_has_block(peer, cid)``,
      ``peer_does_not_have_block(peer, cid)`` and
      ``all_peers_do_not_have_block(peers, cids)``.
    * ``on_send(peer, want_blocks, want_haves)`` is called after wants are sent.
    * ``on_peers_exhausted(cids)`` is called when every peer lacks some wants.
    """

    def __init__(
        self,
        session_id: int,
        peer_manager: Any,
        session_peer_manager: Any,
        canceller: Any,
        block_presence_manager: Any,
        on_send: Callable[[str, list, list], None],
        on_peers_exhausted: Callable[[list], None],
        rng: Optional[random.Random] = None,
    ) -> None:
        self.id = session_id
        self._pm = peer_manager
        self._spm = session_peer_manager
        self._canceller = canceller
        self._bpm = block_presence_manager
        self._on_send = on_send
        self._on_peers_exhausted = on_peers_exhausted

        self._cond = threading.Condition()
        self._changes: deque[_Change] = deque()
        self._stopped = False
        self._started = False
        self._closed = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._wants: dict[Hashable, WantInfo] = {}
        self._peer_consecutive_dont_haves: dict[str, int] = {}
        self._swbt = SentWantBlocksTracker()
        self._peer_rsp_trkr = PeerResponseTracker(rng)

    # Public interface

    def add(self, keys: Iterable[Hashable]) -> None:
        """Add new wants to the session."""
        keys = tuple(keys)
        if keys:
            self._add_change(_Change(add=keys))

    def cancel(self, keys: Iterable[Hashable]) -> None:
        """Cancel wants after a request was cancelled."""
        keys = tuple(keys)
        if keys:
            self._add_change(_Change(cancel=keys))

    def update(
        self,
        sender: str,
        blocks: Optional[Iterable[Hashable]],
        haves: Optional[Iterable[Hashable]],
        dont_haves: Optional[Iterable[Hashable]],
    ) -> None:
        """Record a message with blocks, HAVEs or DONT_HAVEs from a peer."""
        upd = _Update(sender, tuple(blocks or ()), tuple(haves or ()), tuple(dont_haves or ()))
        if upd.blocks or upd.haves or upd.dont_haves:
            self._add_change(_Change(update=upd))

    def signal_availability(self, peer: str, available: bool) -> None:
        """Record that a peer connected or disconnected, without blocking."""
        self._add_change_non_blocking(_Change(availability=(peer, available)))

    def run(self) -> None:
        """Process changes until shut down, then unregister from the peer manager."""
        with self._cond:
            self._started = True
        try:
            while True:
                with self._cond:
                    while not self._changes and not self._stopped:
                        self._cond.wait()
                    if self._stopped:
                        return
                    count = min(len(self._changes), CHANGES_BUFFER_SIZE)
                    batch = [self._changes.popleft() for _ in range(count)]
                    self._cond.notify_all()
                self._on_change(batch)
        finally:
            self._pm.unregister_session(self.id)
            self._closed.set()

    def start(self) -> None:
        """Run the processing loop in a background thread."""
        with self._cond:
            if self._thread is not None:
                raise RuntimeError("session want sender already started")
            self._started = True
            self._thread = threading.Thread(
                target=self.run, name=f"session-want-sender-{self.id}", daemon=True
            )
        self._thread.start()

    def shutdown(self) -> None:
        """Stop processing and wait for the loop to finish."""
        with self._cond:
            self._stopped = True
            started = self._started
            self._cond.notify_all()
        if started:
            self._closed.wait()

    # Change queue

    def _add_change(self, change: _Change) -> None:
        with self._cond:
            while len(self._changes) >= CHANGES_BUFFER_SIZE and not self._stopped:
                self._cond.wait()
            if self._stopped:
                return
            self._changes.append(change)
            self._cond.notify_all()

    def _add_change_non_blocking(self, change: _Change) -> None:
        with self._cond:
            if self._stopped:
                return
            if len(self._changes) < CHANGES_BUFFER_SIZE:
                self._changes.append(change)
                self._cond.notify_all()
                return
        threading.Thread(target=self._add_change, args=(change,), daemon=True).start()

    # Processing

    def _on_change(self, changes: Sequence[_Change]) -> None:
        availability: dict[str, bool] = {}
        cancels: list = []
        updates: list[_Update] = []
        for chng in changes:
            for c in chng.add:
                self._track_want(c)
            for c in chng.cancel:
                self._wants.pop(c, None)
                cancels.append(c)
            if chng.update is not None:
                upd = chng.update
                # Blocks or HAVEs mean the peer is available.
                if upd.blocks or upd.haves:
                    availability[upd.sender] = True
                    self._pm.register_session(upd.sender, self)
                updates.append(upd)
            if chng.availability is not None:
                peer, available = chng.availability
                availability[peer] = available

        newly_available, newly_unavailable = self._process_availability(availability)
        dont_haves = self._process_updates(updates)
        self._check_for_exhausted_wants(dont_haves, newly_unavailable)

        if cancels:
            self._canceller.cancel_session_wants(self.id, cancels)

        if self._spm.has_peers():
            self._send_next_wants(newly_available)

    def _process_availability(self, availability: dict[str, bool]) -> tuple[list[str], list[str]]:
        newly_available: list[str] = []
        newly_unavailable: list[str] = []
        for peer, is_now_available in availability.items():
            if is_now_available:
                changed = self._spm.add_peer(peer)
                if changed:
                    newly_available.append(peer)
            else:
                changed = self._spm.remove_peer(peer)
                if changed:
                    newly_unavailable.append(peer)
            if changed:
                self._update_wants_peer_availability(peer, is_now_available)
                self._peer_consecutive_dont_haves.pop(peer, None)
        return newly_available, newly_unavailable

    def _track_want(self, cid: Hashable) -> None:
        if cid in self._wants:
            return
        self._wants[cid] = WantInfo(self._peer_rsp_trkr)
        for peer in self._spm.peers():
            self._update_want_block_presence(cid, peer)

    def _process_updates(self, updates: Sequence[_Update]) -> list:
        """Apply received blocks, DONT_HAVEs and HAVEs; return the DONT_HAVE CIDs."""
        blk_cids: set = set()
        for upd in updates:
            for c in upd.blocks:
                blk_cids.add(c)
                if self._wants.pop(c, None) is not None:
                    # This peer was first to send the block.
                    self._peer_rsp_trkr.received_block_from(upd.sender)
                    self._spm.protect_connection(upd.sender)
                self._peer_consecutive_dont_haves.pop(upd.sender, None)

        dont_haves: dict = {}
        prune_peers: dict[str, None] = {}
        for upd in updates:
            for c in upd.dont_haves:
                count = self._peer_consecutive_dont_haves.get(upd.sender, 0)
                if count == PEER_DONT_HAVE_LIMIT:
                    prune_peers[upd.sender] = None
                else:
                    self._peer_consecutive_dont_haves[upd.sender] = count + 1

                if c in blk_cids:
                    continue
                dont_haves[c] = None
                self._update_want_block_presence(c, upd.sender)

                # A DONT_HAVE in reply to our want-block frees the want for another peer.
                if self._swbt.have_sent_want_block_to(upd.sender, c):
                    wi = self._wants.get(c)
                    if wi is not None and wi.sent_to == upd.sender:
                        wi.sent_to = None

        for upd in updates:
            for c in upd.haves:
                if c not in blk_cids:
                    self._update_want_block_presence(c, upd.sender)
                self._peer_consecutive_dont_haves.pop(upd.sender, None)
                prune_peers.pop(upd.sender, None)

        # Keep peers that told us they have a block we still want.
        to_prune = [
            p for p in prune_peers
            if not any(self._bpm.peer_has_block(p, c) for c in self._wants)
        ]
        for peer in to_prune:
            log.info("peer %s sent too many dont haves, removing from session %d", peer, self.id)
            self.signal_availability(peer, False)

        return list(dont_haves)

    def _check_for_exhausted_wants(self, dont_haves: list, newly_unavailable: list[str]) -> None:
        if not dont_haves and not newly_unavailable:
            return

        wants = dont_haves
        if newly_unavailable:
            # The peer that left may have been the last one that hadn't said DONT_HAVE.
            wants = list(self._wants)
            if not self._spm.has_peers():
                self._process_exhausted_wants(wants)
                return

        if wants:
            exhausted = self._bpm.all_peers_do_not_have_block(self._spm.peers(), wants)
            self._process_exhausted_wants(exhausted)

    def _process_exhausted_wants(self, exhausted: Iterable[Hashable]) -> None:
        newly = self._newly_exhausted(exhausted)
        if newly:
            self._on_peers_exhausted(newly)

    def _newly_exhausted(self, keys: Iterable[Hashable]) -> list:
        result = []
        for c in keys:
            wi = self._wants.get(c)
            if wi is not None and not wi.exhausted:
                result.append(c)
                wi.exhausted = True
        return result

    def _send_next_wants(self, newly_available: Sequence[str]) -> None:
        to_send: dict[str, _WantSets] = {}

        def for_peer(peer: str) -> _WantSets:
            return to_send.setdefault(peer, _WantSets())

        for c, wi in self._wants.items():
            for peer in newly_available:
                for_peer(peer).want_haves[c] = None

            # Still waiting on a reply to an earlier want-block.
            if wi.sent_to is not None:
                continue
            # Every peer said DONT_HAVE; wait for more peers.
            if wi.best_peer is None:
                continue

            wi.sent_to = wi.best_peer
            for_peer(wi.best_peer).want_blocks[c] = None
            for other in self._spm.peers():
                if other != wi.best_peer:
                    for_peer(other).want_haves[c] = None

        self._send_wants(to_send)

    def _send_wants(self, sends: dict[str, _WantSets]) -> None:
        for peer, snd in sends.items():
            for c in self._piggyback_want_haves(peer, snd.want_blocks):
                snd.want_haves[c] = None

            want_blocks = list(snd.want_blocks)
            want_haves = list(snd.want_haves)
            self._pm.send_wants(peer, want_blocks, want_haves)
            self._on_send(peer, want_blocks, want_haves)
            self._swbt.add_sent_want_blocks_to(peer, want_blocks)

    def _piggyback_want_haves(self, peer: str, want_blocks: dict) -> list:
        return [
            c for c in self._wants
            if c not in want_blocks and not self._swbt.have_sent_want_block_to(peer, c)
        ]

    def _update_wants_peer_availability(self, peer: str, is_now_available: bool) -> None:
        for c, wi in list(self._wants.items()):
            if is_now_available:
                self._update_want_block_presence(c, peer)
            else:
                wi.remove_peer(peer)

    def _update_want_block_presence(self, cid: Hashable, peer: str) -> None:
        wi = self._wants.get(cid)
        if wi is None:
            return
        if self._bpm.peer_has_block(peer, cid):
            wi.set_peer_block_presence(peer, BlockPresence.HAVE)
        elif self._bpm.peer_does_not_have_block(peer, cid):
            wi.set_peer_block_presence(peer, BlockPresence.DONT_HAVE)
        else:
            wi.set_peer_block_presence(peer, BlockPresence.UNKNOWN)