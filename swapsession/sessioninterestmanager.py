"""Records which CIDs each session wants or is interested in."""

from __future__ import annotations

import threading
from typing import Hashable, Iterable, Sequence

from .testutil import Block


class SessionInterestManager:
    """Maps CIDs to the sessions interested in them.

    For each CID and session a flag says whether the session still wants the
    block (True) or only wants to hear messages about it (False). Once a
    block is received the session no longer wants it. It still wants
    messages from peers who have it, because those peers may have other
    blocks the session is after.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._wants: dict[Hashable, dict[int, bool]] = {}

    def record_session_interest(self, session_id: int, keys: Iterable[Hashable]) -> None:
        """Record that the session wants the given blocks."""
        with self._lock:
            for c in keys:
                self._wants.setdefault(c, {})[session_id] = True

    def remove_session(self, session_id: int) -> list:
        """Forget a session; return the keys that no session is interested in any more."""
        with self._lock:
            deleted = []
            for c in list(self._wants):
                sessions = self._wants[c]
                sessions.pop(session_id, None)
                if not sessions:
                    del self._wants[c]
                    deleted.append(c)
            return deleted

    def remove_session_wants(self, session_id: int, keys: Iterable[Hashable]) -> None:
        """Mark blocks as no longer wanted by the session (interest is kept)."""
        with self._lock:
            for c in keys:
                sessions = self._wants.get(c)
                if sessions and sessions.get(session_id):
                    sessions[session_id] = False

    def remove_session_interested(self, session_id: int, keys: Iterable[Hashable]) -> list:
        """Drop the session's interest in the keys.

        Returns the keys that no session is interested in any more.
        """
        with self._lock:
            deleted = []
            for c in keys:
                sessions = self._wants.get(c)
                if sessions is None:
                    continue
                sessions.pop(session_id, None)
                if not sessions:
                    del self._wants[c]
                    deleted.append(c)
            return deleted

    def filter_session_interested(self, session_id: int, *args: Sequence[Hashable]) -> list[list]:
        """For each key list given, return the keys the session is interested in."""
        with self._lock:
            return [
                [c for c in keys if session_id in self._wants.get(c, {})]
                for keys in args
            ]

    def split_wanted_unwanted(self, blocks: Sequence[Block]) -> tuple[list[Block], list[Block]]:
        """Split blocks into those some session still wants and the rest."""
        with self._lock:
            wanted_keys = {
                b.cid
                for b in blocks
                if any(self._wants.get(b.cid, {}).values())
            }
        wanted = [b for b in blocks if b.cid in wanted_keys]
        unwanted = [b for b in blocks if b.cid not in wanted_keys]
        return wanted, unwanted

    def interested_sessions(
        self,
        blocks: Iterable[Hashable],
        haves: Iterable[Hashable],
        dont_haves: Iterable[Hashable],
    ) -> list[int]:
        """Return the sessions interested in any of the given keys."""
        with self._lock:
            sessions: dict[int, None] = {}
            for keys in (blocks, haves, dont_haves):
                for c in keys:
                    for s in self._wants.get(c, {}):
                        sessions[s] = None
            return list(sessions)