"""Tracks the peers of a session and tags them with the connection manager."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

log = logging.getLogger("swapsession.sessionpeermanager")

# Tag value telling the connection manager to keep a session peer's connection.
SESSION_PEER_TAG_VALUE = 5


class PeerTagger(Protocol):
    """Tags peers with metadata for a connection manager."""

    def tag_peer(self, peer: str, tag: str, value: int) -> None: ...

    def untag_peer(self, peer: str, tag: str) -> None: ...

    def protect(self, peer: str, tag: str) -> None: ...

    def unprotect(self, peer: str, tag: str) -> bool: ...


class SessionPeerManager:
    """Keeps the set of peers of one session and manages their tags."""

    def __init__(self, session_id: int, tagger: PeerTagger) -> None:
        self.id = session_id
        self.tag = f"bs-ses-{session_id}"
        self._tagger = tagger
        self._lock = threading.Lock()
        self._peers: dict[str, None] = {}
        self._peers_discovered = False

    def add_peer(self, peer: str) -> bool:
        """Add a peer; return True if it was not already in the session."""
        with self._lock:
            if peer in self._peers:
                return False
            self._peers[peer] = None
            self._peers_discovered = True
            self._tagger.tag_peer(peer, self.tag, SESSION_PEER_TAG_VALUE)
            log.debug("added peer %s to session %d (%d peers)", peer, self.id, len(self._peers))
            return True

    def protect_connection(self, peer: str) -> None:
        """Protect a session peer's connection from being pruned."""
        with self._lock:
            if peer in self._peers:
                self._tagger.protect(peer, self.tag)

    def remove_peer(self, peer: str) -> bool:
        """Remove a peer; return True if it was in the session."""
        with self._lock:
            if peer not in self._peers:
                return False
            del self._peers[peer]
            self._tagger.untag_peer(peer, self.tag)
            self._tagger.unprotect(peer, self.tag)
            log.debug("removed peer %s from session %d (%d peers)", peer, self.id, len(self._peers))
            return True

    def peers_discovered(self) -> bool:
        """True once any peer has been added, even if all were later removed."""
        with self._lock:
            return self._peers_discovered

    def peers(self) -> list[str]:
        with self._lock:
            return list(self._peers)

    def has_peers(self) -> bool:
        with self._lock:
            return bool(self._peers)

    def has_peer(self, peer: str) -> bool:
        with self._lock:
            return peer in self._peers

    def shutdown(self) -> None:
        """Untag and unprotect every peer so their connections can be released."""
        with self._lock:
            for p in self._peers:
                self._tagger.untag_peer(p, self.tag)
                self._tagger.unprotect(p, self.tag)