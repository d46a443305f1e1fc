# swapsession

Bookkeeping for block-exchange sessions. It tracks which content
identifiers (CIDs) a session still wants and which peers have or lack
each block. It picks the peer that gets the optimistic want-block
request, and it decides when to rebroadcast want-haves.

The package has no third-party dependencies.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `swapsession.cidqueue.CidQueue` is a FIFO of unique CIDs. `push`
  ignores duplicates and `remove` is cheap because entries are dropped
  lazily. `pop` raises `IndexError` when the queue is empty. `cids`
  returns the queued CIDs in order. The class also supports `in` and
  `len()`.
- `swapsession.sessionwants.SessionWants` holds the pending wants (not
  yet sent) and the live wants (sent, no block yet).
  - `get_next_wants` moves pending wants to live, up to the broadcast
    limit.
  - `blocks_received` returns the wanted CIDs and their total latency in
    seconds.
  - `prepare_broadcast` returns live wants in request order, up to the
    limit.
  - `random_live_want` returns `None` when there are no live wants.
- `swapsession.peerresponsetracker.PeerResponseTracker` counts how often
  each peer was first to deliver a block. `choose` picks a peer at
  random, with odds in proportion to that count. Unknown peers count as
  1, and `choose` returns `None` for an empty list.
- `swapsession.wantinfo.BlockPresence` is an `IntEnum` with the values
  `DONT_HAVE` < `UNKNOWN` < `HAVE`.
- `swapsession.wantinfo.WantInfo` records each peer's presence for one
  want. It keeps `best_peer` up to date and breaks ties through the
  response tracker.
- `swapsession.sentwantblockstracker.SentWantBlocksTracker` remembers
  which want-blocks were sent to which peer.
- `swapsession.sessioninterestmanager.SessionInterestManager` records,
  per CID, which sessions still want the block and which are only
  interested in messages about it.
  - `filter_session_interested` keeps the keys a session cares about.
  - `split_wanted_unwanted` separates `Block`s that some session still
    wants from the rest.
  - `interested_sessions` lists the sessions interested in a message.
- `swapsession.sessionpeermanager.SessionPeerManager` keeps the peers of
  one session. It tags and untags them through a `PeerTagger` object
  (`tag_peer`, `untag_peer`, `protect`, `unprotect`) using the tag
  `bs-ses-<id>`. `peers_discovered` stays `True` once any peer has been
  added.
- `swapsession.sessionwantsender.SessionWantSender` processes added
  wants, cancels, received messages (`update`) and peer availability
  changes (`signal_availability`). It runs on a background thread
  (`start` / `shutdown`).
  - For each want it sends one want-block to the best peer and
    want-haves to the others.
  - It reports wants for which every peer has said DONT_HAVE through
    `on_peers_exhausted`.
  - It removes a peer that sends more than 16 DONT_HAVEs in a row,
    unless that peer has said HAVE for a block still wanted.
- `swapsession.session.Session` ties these together on its own event
  loop thread.
  - Callers use `want_blocks`, `cancel_wants`, `receive_from` and
    `set_base_tick_delay`.
  - When the session goes idle it broadcasts want-haves.
  - On the first of a run of idle ticks it searches for providers. It
    also searches periodically for a random live want.
  - It can be used as a context manager; leaving the block calls
    `shutdown`.
  - Delays are in seconds.
  - `LatencyTracker` holds the average want-to-block latency.
- `swapsession.sessionmanager.SessionManager` creates sessions through a
  factory you supply and hands out sequential IDs. `receive_from` passes
  incoming messages to the interested sessions. It sends cancels for
  keys that no session wants any more, and `shutdown` shuts down every
  tracked session once.
- `swapsession.testutil` has helpers for tests and experiments:
  - `Block.from_data` gives a block whose CID is the SHA-256 hex digest
    of its data; it is not a real multihash CID.
  - `generate_cids`, `generate_peers`, `generate_blocks_of_size` and
    `generate_session_id` produce test data.
  - There are list-matching helpers as well.

## Example

```python
from swapsession.sessionwants import SessionWants
from swapsession.testutil import generate_cids

wants = SessionWants(5)
cids = generate_cids(10)
wants.blocks_requested(cids)

live = wants.get_next_wants()          # the first five become live
wanted, latency = wants.blocks_received(cids[:2])
print(len(wants.live_wants()))         # 3
```

## What it does not do

This package makes the decisions for sessions but does not move any
bytes. You supply the collaborators, each with the methods named in the
class docstrings:

- a peer manager that sends wants, broadcasts and cancels over a network;
- a block presence manager that records HAVE / DONT_HAVE per peer;
- a provider finder;
- a connection-manager tagger.

There is no network transport, no message encoding, no block store and
no command-line tool. `Session` does not hand fetched blocks back to
callers; it only tracks wants.

`SessionManager` calls its session factory with its own argument order,
documented on the class. That order is not the `Session` constructor's,
so the factory has to adapt the arguments.