# shardraft

A Raft consensus peer together with the client-side pieces of a sharded
key/value service: a persistent state store, a replicated log with
snapshot support, the Raft RPC message types, and clerks for the shard
controller and the sharded key/value store. It has no dependencies
outside the standard library.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `shardraft.persister.Persister`: a thread-safe holder for a peer's
  serialized Raft state and its service snapshot. `save` stores both
  together in one step, `save_raft_state` replaces only the state;
  `read_raft_state`, `read_snapshot`, `raft_state_size`,
  `snapshot_size` read them back, and `copy` gives a fresh persister
  with the same contents.
- `shardraft.log.RaftLog`: the Raft log addressed by absolute log
  index. Its first stored entry always stands for the last entry
  covered by the snapshot. `compact` discards entries behind a new
  snapshot point, `reset` adopts a snapshot received from a leader,
  `merge` stores incoming entries after a matching index, `truncate`
  drops a conflicting suffix and `first_index_of_term` helps a leader
  back up over a follower's conflicting entries.
- `shardraft.messages`: `Role`, `LogEntry`, `ApplyMsg`, the RPC
  argument and reply types (`RequestVoteArgs`, `AppendEntriesArgs`,
  `InstallSnapshotArgs` and their replies), and `encode_state` /
  `decode_state`, which turn the persistent Raft state into bytes and
  back (`decode_state` returns `None` for empty data and raises
  `ValueError` for data it cannot read).
- `shardraft.raft`: the `Raft` peer, `make`, which builds a peer and
  starts its background threads, and `Peer`, an in-process RPC end
  point.
- `shardraft.shardctrler`: the shard controller's `Config` (with
  `NSHARDS = 10` shards), its RPC types, `nrand`, and its `Clerk`
  (`query`, `join`, `leave`, `move`).
- `shardraft.shardkv`: `key2shard`, the key/value RPC types and the
  sharded key/value `Clerk` (`get`, `put`, `append`, `put_append`).
- `shardraft.debug`: `debug_init`, `debug`, `LogEvent`, and `ensure`,
  which raises `InvariantError` when an internal invariant fails.

## Running a group of Raft peers

Each peer receives a list of `Peer` end points, one per member of the
group, in the same order for every member. A `Peer` delivers a call by
invoking the matching handler (`request_vote`, `append_entries`,
`install_snapshot`) on its `target`; it returns `None`, standing for a
lost request or reply, when `enabled` is false or no target is set.

```python
import queue
from shardraft.persister import Persister
from shardraft.raft import Peer, make

ends = [Peer() for _ in range(3)]
queues = [queue.Queue() for _ in range(3)]
rafts = [make(ends, i, Persister(), queues[i]) for i in range(3)]
for end, rf in zip(ends, rafts):
    end.target = rf

term, is_leader = rafts[0].get_state()
index, term, ok = rafts[0].start("set x=1")   # ok is False unless leader

msg = queues[0].get()          # an ApplyMsg per committed entry
if msg.command_valid:
    rafts[0].snapshot(msg.command_index, b"service state")

for rf in rafts:
    rf.kill()
```

`start` returns at once; a command is not promised to commit, since the
leader may fail or lose an election. When not leader it returns
`(0, 0, False)`. Committed commands arrive on the apply queue as
`ApplyMsg` values with `command_valid` set; a snapshot installed from a
leader arrives with `snapshot_valid` set. A service calls `snapshot`
once it no longer needs the log up to an index, and the peer trims its
log and saves the snapshot with its state.

A `Raft` built directly with `Raft(...)` does nothing in the background
until `run()` is called; `make` does both.

## Clerks

Both clerks take a list of end points, each an object with a
`call(method, args)` method that returns a reply or `None` when the
call fails. They retry, sleeping `retry_interval` seconds (0.1 by
default) between rounds, until a replica answers.

The shard controller clerk sends `ShardCtrler.Query`, `ShardCtrler.Join`,
`ShardCtrler.Leave` and `ShardCtrler.Move`, accepting the first reply
whose `wrong_leader` is false. `query(-1)` asks for the latest
configuration.

The key/value clerk is given the controller end points and a
`make_end(name)` function that turns a server name from
`Config.groups` into an end point. It looks up the owning group with
`key2shard` (the first byte of the key modulo 10), sends
`ShardKV.Get` or `ShardKV.PutAppend` to that group's servers, and
fetches a fresh configuration from the controller whenever no server
accepts the request or one answers with `Err.WRONG_GROUP`. `get`
returns `""` for a missing key.

## What the package does not do

There is no shard controller server and no sharded key/value server
here: only the clients that talk to them and the data types they
exchange. There is no network layer either; `Peer` calls the target
peer's handlers directly in the same process. There is no command-line
program.

## Debug output

Set the `VERBOSE` environment variable to `1` or higher and call
`shardraft.debug.debug_init()` to have the peer trace elections,
heartbeats and snapshots on the `shardraft` logger, which then writes
to standard error. Each line carries the microseconds since
`debug_init`, the event tag and the server id. A `VERBOSE` value that
is not an integer makes `debug_init` raise `ValueError`.