"""Creates sessions, dispatches incoming messages to them and cleans up after them."""

from __future__ import annotations

import itertools
import threading
from typing import Any, Callable, Hashable, Optional, Sequence

from .sessioninterestmanager import SessionInterestManager


class SessionManager:
    """Creates, tracks and dispatches to sessions.

    ``session_factory`` is called positionally with: this manager, the session
    ID, the session's peer manager, the session interest manager, the peer
    manager, the block presence manager, the notifier, the provider search
    delay, the rebroadcast delay and the local peer ID. It returns an object
    with ``receive_from(peer, blocks, haves, dont_haves)`` and ``shutdown()``.

    ``peer_manager_factory(session_id)`` builds the session's peer manager.
    ``block_presence_manager`` provides ``receive_from(peer, haves, dont_haves)``
    and ``remove_keys(keys)``; ``peer_manager`` provides ``send_cancels(keys)``.
    """

    def __init__(
        self,
        session_factory: Callable[..., Any],
        session_interest_manager: SessionInterestManager,
        peer_manager_factory: Callable[[int], Any],
        block_presence_manager: Any,
        peer_manager: Any,
        notif: Any = None,
        self_peer: str = "",
    ) -> None:
        self._session_factory = session_factory
        self._sim = session_interest_manager
        self._peer_manager_factory = peer_manager_factory
        self._bpm = block_presence_manager
        self._peer_manager = peer_manager
        self._notif = notif
        self._self_peer = self_peer

        self._sessions_lock = threading.Lock()
        # None once the manager has been shut down.
        self._sessions: Optional[dict[int, Any]] = {}

        self._id_lock = threading.Lock()
        self._ids = itertools.count(1)

    def new_session(self, provider_search_delay: float, rebroadcast_delay: Any) -> Any:
        """Create a session, track it, and return it."""
        session_id = self.next_session_id()
        session_peer_manager = self._peer_manager_factory(session_id)
        session = self._session_factory(
            self,
            session_id,
            session_peer_manager,
            self._sim,
            self._peer_manager,
            self._bpm,
            self._notif,
            provider_search_delay,
            rebroadcast_delay,
            self._self_peer,
        )
        with self._sessions_lock:
            if self._sessions is not None:
                self._sessions[session_id] = session
        return session

    def shutdown(self) -> None:
        """Shut down every session; calling it again does nothing."""
        with self._sessions_lock:
            sessions = list(self._sessions.values()) if self._sessions else []
            self._sessions = None
        for session in sessions:
            session.shutdown()

    def remove_session(self, session_id: int) -> None:
        """Forget a session and cancel the keys no other session wants."""
        self._cancel_wants(self._sim.remove_session(session_id))
        with self._sessions_lock:
            if self._sessions is not None:
                self._sessions.pop(session_id, None)

    def next_session_id(self) -> int:
        """Return the next sequential session identifier."""
        with self._id_lock:
            return next(self._ids)

    def receive_from(
        self,
        peer: str,
        blocks: Sequence[Hashable],
        haves: Sequence[Hashable],
        dont_haves: Sequence[Hashable],
    ) -> None:
        """Pass an incoming message to the interested sessions, then cancel received blocks."""
        self._bpm.receive_from(peer, haves, dont_haves)

        for session_id in self._sim.interested_sessions(blocks, haves, dont_haves):
            with self._sessions_lock:
                if self._sessions is None:
                    return
                session = self._sessions.get(session_id)
            if session is not None:
                session.receive_from(peer, blocks, haves, dont_haves)

        self._peer_manager.send_cancels(blocks)

    def cancel_session_wants(self, session_id: int, wants: Sequence[Hashable]) -> None:
        """Drop a session's interest in keys after its request was cancelled."""
        self._cancel_wants(self._sim.remove_session_interested(session_id, wants))

    def _cancel_wants(self, wants: list) -> None:
        self._bpm.remove_keys(wants)
        self._peer_manager.send_cancels(wants)