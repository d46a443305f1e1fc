import queue
import threading
import time
from dataclasses import dataclass

import pytest

from swapsession.session import BROADCAST_LIVE_WANTS_LIMIT, LatencyTracker, Session
from swapsession.sessioninterestmanager import SessionInterestManager
from swapsession.sessionpeermanager import SessionPeerManager
from swapsession.testutil import (
    generate_blocks_of_size,
    generate_peers,
    generate_session_id,
    index_of,
    match_keys_ignore_order,
    match_peers_ignore_order,
)


class FakeSessionManager:
    def __init__(self):
        self._lock = threading.Lock()
        self.removed_ids = []
        self.cancels = []
        self.cancel_session_ids = []

    @property
    def removed(self):
        with self._lock:
            return bool(self.removed_ids)

    def remove_session(self, session_id):
        with self._lock:
            self.removed_ids.append(session_id)

    def cancel_session_wants(self, session_id, wants):
        with self._lock:
            self.cancel_session_ids.append(session_id)
            self.cancels.extend(wants)


class FakePeerTagger:
    def __init__(self):
        self.protected = {}

    def tag_peer(self, peer, tag, value):
        pass

    def untag_peer(self, peer, tag):
        pass

    def protect(self, peer, tag):
        self.protected.setdefault(peer, set()).add(tag)

    def unprotect(self, peer, tag):
        tags = self.protected.get(peer)
        if tags is None:
            return False
        tags.discard(tag)
        return bool(tags)


class FakeProviderFinder:
    def __init__(self):
        self.requested = queue.Queue()

    def find_providers_async(self, cid):
        self.requested.put(cid)
        return iter(())


class FakePeerManager:
    def __init__(self):
        self.want_reqs = queue.Queue()

    def register_session(self, peer, session):
        pass

    def unregister_session(self, session_id):
        pass

    def send_wants(self, peer, want_blocks, want_haves):
        pass

    def broadcast_want_haves(self, wants):
        self.want_reqs.put(list(wants))

    def send_cancels(self, cancels):
        pass


class FakeBlockPresenceManager:
    def __init__(self):
        self.haves = set()
        self.dont_haves = set()

    def receive_from(self, peer, haves, dont_haves):
        self.haves.update((peer, c) for c in haves)
        self.dont_haves.update((peer, c) for c in dont_haves)

    def peer_has_block(self, peer, cid):
        return (peer, cid) in self.haves

    def peer_does_not_have_block(self, peer, cid):
        return (peer, cid) in self.dont_haves

    def all_peers_do_not_have_block(self, peers, cids):
        return [c for c in cids if peers and all((p, c) in self.dont_haves for p in peers)]

    def remove_keys(self, keys):
        pass


@dataclass
class Harness:
    session: Session
    sm: FakeSessionManager
    pm: FakePeerManager
    spm: SessionPeerManager
    finder: FakeProviderFinder
    sim: SessionInterestManager
    session_id: int


def make_session(initial_delay=1.0, periodic_delay=60.0):
    sm = FakeSessionManager()
    pm = FakePeerManager()
    spm = SessionPeerManager(1, FakePeerTagger())
    finder = FakeProviderFinder()
    sim = SessionInterestManager()
    bpm = FakeBlockPresenceManager()
    sid = generate_session_id()
    session = Session(sm, sid, spm, finder, sim, pm, bpm, initial_delay, periodic_delay, "")
    return Harness(session, sm, pm, spm, finder, sim, sid)


@pytest.fixture
def harness_factory():
    made = []

    def factory(**kwargs):
        h = make_session(**kwargs)
        made.append(h)
        return h

    yield factory
    for h in made:
        h.session.shutdown()


def wait_for(predicate, timeout=1.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.002)
    return predicate()


def test_session_get_blocks(harness_factory):
    h = harness_factory()
    blks = generate_blocks_of_size(BROADCAST_LIVE_WANTS_LIMIT * 2, 16)
    cids = [b.cid for b in blks]

    h.session.want_blocks(cids)
    received = h.pm.want_reqs.get(timeout=1)

    interested = h.sim.filter_session_interested(h.session_id, cids)
    assert match_keys_ignore_order(interested[0], cids)
    assert len(received) == BROADCAST_LIVE_WANTS_LIMIT

    peers = generate_peers(5)
    for i, p in enumerate(peers):
        blk = blks[index_of(blks, received[i])]
        h.session.receive_from(p, [], [blk.cid], [])

    assert wait_for(lambda: match_peers_ignore_order(h.spm.peers(), peers))
    _, unwanted = h.sim.split_wanted_unwanted(blks)
    assert unwanted == []

    h.session.receive_from(peers[0], [], [], [blks[0].cid])
    time.sleep(0.01)
    _, unwanted = h.sim.split_wanted_unwanted(blks)
    assert unwanted == []

    h.session.receive_from(peers[1], [blks[0].cid], [], [])
    assert wait_for(lambda: len(h.sim.split_wanted_unwanted(blks)[1]) == 1)
    wanted, unwanted = h.sim.split_wanted_unwanted(blks)
    assert unwanted[0].cid == blks[0].cid
    assert len(wanted) == len(blks) - 1

    h.session.shutdown()
    assert wait_for(lambda: h.sm.removed)
    assert h.sm.removed_ids == [h.session_id]


def test_session_find_more_peers(harness_factory):
    h = harness_factory()
    h.session.set_base_tick_delay(0.0002)
    blks = generate_blocks_of_size(BROADCAST_LIVE_WANTS_LIMIT * 2, 16)
    cids = [b.cid for b in blks]
    h.session.want_blocks(cids)

    h.pm.want_reqs.get(timeout=1)

    # Let some latency register before the block arrives.
    time.sleep(0.02)
    p = generate_peers(1)[0]
    h.session.receive_from(p, [blks[0].cid], [], [])

    h.pm.want_reqs.get(timeout=1)
    rebroadcast = h.pm.want_reqs.get(timeout=1)
    assert len(rebroadcast) == BROADCAST_LIVE_WANTS_LIMIT
    assert cids[0] not in rebroadcast

    found = h.finder.requested.get(timeout=1)
    assert found in cids


def test_session_on_peers_exhausted(harness_factory):
    h = harness_factory()
    blks = generate_blocks_of_size(BROADCAST_LIVE_WANTS_LIMIT + 5, 16)
    cids = [b.cid for b in blks]
    h.session.want_blocks(cids)

    received = h.pm.want_reqs.get(timeout=1)
    assert len(received) == BROADCAST_LIVE_WANTS_LIMIT

    h.session.on_peers_exhausted(cids[-2:])
    received = h.pm.want_reqs.get(timeout=1)
    assert received == cids[-2:]


def test_session_failing_to_get_first_block(harness_factory):
    h = harness_factory(initial_delay=0.02, periodic_delay=0.5)
    blks = generate_blocks_of_size(4, 16)
    cids = [b.cid for b in blks]
    h.session.want_blocks(cids)

    h.pm.want_reqs.get(timeout=1)

    first = h.pm.want_reqs.get(timeout=1)
    t1 = time.monotonic()
    assert len(first) >= len(cids)

    k = h.finder.requested.get(timeout=1)
    assert index_of(blks, k) != -1

    second = h.pm.want_reqs.get(timeout=1)
    t2 = time.monotonic()
    assert len(second) >= len(cids)

    third = h.pm.want_reqs.get(timeout=1)
    t3 = time.monotonic()
    assert len(third) >= len(cids)
    assert t3 - t2 > t2 - t1

    fourth = h.pm.want_reqs.get(timeout=1)
    t4 = time.monotonic()
    assert len(fourth) >= len(cids)
    assert t4 - t3 > t3 - t2

    # No provider search on consecutive ticks.
    assert h.finder.requested.empty()

    # The periodic search looks for providers of a live want.
    k = h.finder.requested.get(timeout=2)
    assert index_of(blks, k) != -1


def test_session_on_shutdown_called(harness_factory):
    h = harness_factory()
    h.session.shutdown()
    assert wait_for(lambda: h.sm.removed)
    assert h.sm.removed_ids == [h.session_id]


def test_session_context_manager_shuts_down():
    h = make_session()
    with h.session as session:
        assert session.id == h.session_id
    assert wait_for(lambda: h.sm.removed)
    assert h.sm.removed_ids == [h.session_id]


def test_session_receive_message_after_shutdown(harness_factory):
    h = harness_factory()
    blks = generate_blocks_of_size(2, 16)
    cids = [b.cid for b in blks]
    h.session.want_blocks(cids)
    h.pm.want_reqs.get(timeout=1)

    h.session.shutdown()
    assert wait_for(lambda: h.sm.removed)

    peer = generate_peers(1)[0]
    h.session.receive_from(peer, [blks[0].cid], [], [])
    time.sleep(0.005)

    wanted, unwanted = h.sim.split_wanted_unwanted(blks)
    assert len(wanted) == 2
    assert unwanted == []


def test_session_cancel_wants_sends_cancels(harness_factory):
    h = harness_factory()
    blks = generate_blocks_of_size(3, 16)
    cids = [b.cid for b in blks]
    h.session.want_blocks(cids)
    h.pm.want_reqs.get(timeout=1)

    h.session.cancel_wants([cids[0], cids[2]])
    assert wait_for(lambda: len(h.sm.cancels) == 2)
    assert set(h.sm.cancels) == {cids[0], cids[2]}
    assert set(h.sm.cancel_session_ids) == {h.session_id}


def test_latency_tracker_empty():
    lt = LatencyTracker()
    assert lt.has_latency() is False
    with pytest.raises(ZeroDivisionError):
        lt.average_latency()


def test_latency_tracker_average():
    lt = LatencyTracker()
    lt.receive_update(2, 1.0)
    assert lt.has_latency() is True
    assert lt.average_latency() == pytest.approx(0.5)
    lt.receive_update(2, 1.0)
    assert lt.average_latency() == pytest.approx(0.5)
    lt.receive_update(1, 3.0)
    assert lt.average_latency() == pytest.approx(1.0)


def test_latency_tracker_count_without_latency():
    lt = LatencyTracker()
    lt.receive_update(3, 0.0)
    assert lt.has_latency() is False
    assert lt.count == 3