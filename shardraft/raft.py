"""A Raft consensus peer: elections, log replication, commitment and snapshots."""

from __future__ import annotations

import queue
import random
import threading
import time
from typing import Any, Callable

from shardraft.debug import LogEvent, debug
from shardraft.log import RaftLog
from shardraft.messages import (
    AppendEntriesArgs,
    AppendEntriesReply,
    ApplyMsg,
    InstallSnapshotArgs,
    InstallSnapshotReply,
    LogEntry,
    RequestVoteArgs,
    RequestVoteReply,
    Role,
    decode_state,
    encode_state,
)
from shardraft.persister import Persister

ELECTION_TIMEOUT = 0.3
BUSY_HEARTBEAT_INTERVAL = 0.01
IDLE_HEARTBEAT_INTERVAL = 0.1

_HANDLERS: dict[str, Callable[[Any, Any], Any]] = {
    "Raft.RequestVote": lambda target, args: target.request_vote(args),
    "Raft.AppendEntries": lambda target, args: target.append_entries(args),
    "Raft.InstallSnapshot": lambda target, args: target.install_snapshot(args),
}


class Peer:
    """An in-process RPC end point to another Raft peer.

    A call returns the handler's reply, or None when the end point is
    disabled or has no target, standing for a lost request or reply.
    """

    def __init__(self, target: Any = None, enabled: bool = True) -> None:
        self.target = target
        self.enabled = enabled

    def call(self, method: str, args: Any) -> Any:
        handler = _HANDLERS.get(method)
        if handler is None:
            raise ValueError(f"unknown RPC method {method!r}")
        target = self.target
        if not self.enabled or target is None:
            return None
        return handler(target, args)


def _spawn(fn: Callable, *args) -> threading.Thread:
    thread = threading.Thread(target=fn, args=args, daemon=True)
    thread.start()
    return thread


class Raft:
    """A single Raft peer. Call run() (or use make()) to start its background work."""

    def __init__(self, peers: list[Peer], me: int, persister: Persister, apply_queue: queue.Queue) -> None:
        self._lock = threading.Lock()
        self._commit_cond = threading.Condition(self._lock)
        self._dead = threading.Event()
        self.peers = list(peers)
        self.persister = persister
        self.me = me
        self.apply_queue = apply_queue

        self.current_term = 0
        self.voted_for = -1
        self.log = RaftLog()
        self.snapshot_data = b""

        self.commit_index = 0
        self.last_applied = 0
        self.next_index: list[int] = []
        self.match_index: list[int] = []
        self.role = Role.FOLLOWER
        self.heartbeat_interval = BUSY_HEARTBEAT_INTERVAL
        self._last_heartbeat = time.monotonic()

        self._read_persist(persister.read_raft_state())
        self.snapshot_data = persister.read_snapshot()
        self._reset_election_timer()

    # ----- persistence -------------------------------------------------

    def _state_bytes(self) -> bytes:
        return encode_state(
            self.current_term,
            self.voted_for,
            self.log.entries,
            self.log.snapshot_index,
            self.log.snapshot_term,
        )

    def _persist(self) -> None:
        self.persister.save(self._state_bytes(), self.snapshot_data)

    def _persist_state(self) -> None:
        self.persister.save_raft_state(self._state_bytes())

    def _read_persist(self, data: bytes) -> None:
        state = decode_state(data)
        if state is None:
            return
        self.current_term = state.current_term
        self.voted_for = state.voted_for
        self.log = RaftLog(state.entries, state.snapshot_index, state.snapshot_term)

    # ----- helpers -----------------------------------------------------

    def _reset_election_timer(self) -> None:
        self._last_heartbeat = time.monotonic()

    def _step_down(self, term: int) -> None:
        self.current_term = term
        self.role = Role.FOLLOWER
        self.voted_for = -1

    # ----- public API --------------------------------------------------

    def get_state(self) -> tuple[int, bool]:
        """Return the current term and whether this peer believes it leads."""
        with self._lock:
            return self.current_term, self.role == Role.LEADER

    def snapshot(self, index: int, snapshot: bytes) -> None:
        """The service has snapshotted everything through ``index``; trim the log."""
        with self._lock:
            debug(LogEvent.SNAP, self.me, "Snapshot start index=%d", index)
            if index <= self.log.snapshot_index:
                return
            self.snapshot_data = bytes(snapshot)
            self.log.compact(index)
            self._persist()

    def start(self, command: Any) -> tuple[int, int, bool]:
        """Append ``command`` if leader; return (index, term, is_leader)."""
        with self._lock:
            if self.role != Role.LEADER:
                return 0, 0, False
            index = self.log.append(LogEntry(command, self.current_term))
            return index, self.current_term, True

    def kill(self) -> None:
        self._dead.set()
        with self._commit_cond:
            self._commit_cond.notify_all()

    def killed(self) -> bool:
        return self._dead.is_set()

    def run(self) -> None:
        """Start the election ticker, the applier and any pending snapshot delivery."""
        _spawn(self._ticker)
        _spawn(self._apply_committed)
        _spawn(self._apply_snapshot)

    # ----- RPC handlers ------------------------------------------------

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        with self._lock:
            reply = RequestVoteReply(term=self.current_term, vote_granted=False)
            if args.term < self.current_term:
                debug(LogEvent.VOTE, self.me, "deny vote to %d: stale term %d", args.candidate_id, args.term)
                return reply
            if args.term > self.current_term:
                self._step_down(args.term)
            if self.voted_for in (-1, args.candidate_id):
                last_term = self.log.last_term()
                if args.last_log_term > last_term or (
                    args.last_log_term == last_term and args.last_log_index >= self.log.last_index()
                ):
                    debug(LogEvent.VOTE, self.me, "Grant vote to %d.", args.candidate_id)
                    self.voted_for = args.candidate_id
                    self._reset_election_timer()
                    reply.vote_granted = True
                self._persist()
            return reply

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        with self._lock:
            reply = AppendEntriesReply(term=self.current_term)
            if args.term < self.current_term:
                reply.success = False
                return reply
            debug(LogEvent.HEARTBEAT, self.me, "received AppendEntries from %d, args=%s", args.leader_id, args)
            self._reset_election_timer()
            if args.term > self.current_term or self.role == Role.CANDIDATE:
                self._step_down(args.term)

            prev = args.prev_log_index
            if prev == 0 or (prev <= self.log.last_index() and prev < self.log.snapshot_index):
                self.log.merge(prev, args.entries)
                reply.success = True
                self._follower_commit(args.leader_commit_index)
            elif self.log.last_index() < prev:
                reply.conflict_term = self.log.last_term()
                reply.conflict_index = self.log.last_index()
                reply.success = False
            elif self.log.entry(prev).term != args.prev_log_term:
                reply.conflict_term = self.log.entry(prev).term
                reply.conflict_index = prev
                self.log.truncate(prev)
                reply.success = False
            else:
                self.log.merge(prev, args.entries)
                reply.success = True
                self._follower_commit(args.leader_commit_index)
            return reply

    def _follower_commit(self, leader_commit_index: int) -> None:
        if leader_commit_index > self.commit_index:
            self.commit_index = min(leader_commit_index, self.log.last_index())
            self._persist_state()
            self._commit_cond.notify_all()

    def install_snapshot(self, args: InstallSnapshotArgs) -> InstallSnapshotReply:
        with self._lock:
            reply = InstallSnapshotReply(term=self.current_term)
            if args.term < self.current_term:
                return reply
            debug(LogEvent.SNAP, self.me, "Received InstallSnapshot from %d, args=%s", args.leader_id, args)
            self._reset_election_timer()
            if args.term > self.current_term or self.role == Role.CANDIDATE:
                self._step_down(args.term)
            if (
                self.log.snapshot_index >= args.last_included_index
                or self.last_applied >= args.last_included_index
            ):
                return reply
            self.log.reset(args.last_included_index, args.last_included_term)
            self.snapshot_data = bytes(args.data)
            self._persist()
        _spawn(self._apply_snapshot)
        return reply

    # ----- applying ----------------------------------------------------

    def _apply_snapshot(self) -> None:
        with self._lock:
            snapshot_index = self.log.snapshot_index
            if self.last_applied >= snapshot_index:
                return
            msg = ApplyMsg(
                command_valid=False,
                snapshot_valid=True,
                snapshot=self.snapshot_data,
                snapshot_term=self.log.snapshot_term,
                snapshot_index=snapshot_index,
            )
        self.apply_queue.put(msg)
        with self._lock:
            if snapshot_index >= self.log.snapshot_index:
                self.commit_index = snapshot_index
                self.last_applied = snapshot_index

    def _apply_committed(self) -> None:
        while not self.killed():
            with self._commit_cond:
                if self.last_applied >= self.commit_index:
                    self._commit_cond.wait(timeout=0.1)
                    continue
                command_index = self.last_applied + 1
                if command_index <= self.log.snapshot_index:
                    self._commit_cond.wait(timeout=0.01)
                    continue
                msg = ApplyMsg(
                    command_valid=True,
                    command=self.log.entry(command_index).command,
                    command_index=command_index,
                )
            self.apply_queue.put(msg)
            with self._lock:
                if command_index >= self.last_applied + 1:
                    self.last_applied = command_index

    # ----- elections ---------------------------------------------------

    def _ticker(self) -> None:
        while not self.killed():
            time.sleep(0.05 + random.random() * 0.3)
            _spawn(self._leader_election)

    def _request_vote_from(self, peer_id: int, args: RequestVoteArgs, replies: queue.Queue) -> None:
        replies.put(self.peers[peer_id].call("Raft.RequestVote", args))

    def _leader_election(self) -> None:
        with self._lock:
            timed_out = time.monotonic() - self._last_heartbeat >= ELECTION_TIMEOUT
            if self.role == Role.FOLLOWER and timed_out:
                self.role = Role.CANDIDATE
            if self.role != Role.CANDIDATE or not timed_out or self.killed():
                return
            self.current_term += 1
            self.voted_for = self.me
            self._persist()
            self._reset_election_timer()
            debug(LogEvent.VOTE, self.me, "Leader election start term %d", self.current_term)
            replies: queue.Queue = queue.Queue()
            args = RequestVoteArgs(
                term=self.current_term,
                candidate_id=self.me,
                last_log_index=self.log.last_index(),
                last_log_term=self.log.last_term(),
            )
            for peer_id in range(len(self.peers)):
                if peer_id != self.me:
                    _spawn(self._request_vote_from, peer_id, args, replies)

        granted = 1
        majority = len(self.peers) // 2 + 1
        for _ in range(len(self.peers) - 1):
            if granted >= majority:
                break
            reply = replies.get()
            if reply is None:
                continue
            if reply.vote_granted:
                granted += 1
                continue
            with self._lock:
                if reply.term > self.current_term:
                    self._step_down(reply.term)
                    break

        with self._lock:
            if self.role == Role.CANDIDATE and granted >= majority:
                debug(LogEvent.VOTE, self.me, "Elected with term %d", self.current_term)
                self.role = Role.LEADER
                self.next_index = [self.log.last_index() + 1] * len(self.peers)
                self.match_index = [0] * len(self.peers)
                _spawn(self._leader_heartbeats)

    # ----- leader ------------------------------------------------------

    def _leader_heartbeats(self) -> None:
        while not self.killed():
            with self._lock:
                if self.role != Role.LEADER:
                    break
            self._leader_replicate()
            time.sleep(self.heartbeat_interval)
            _spawn(self._leader_commit)

    def _leader_replicate(self) -> None:
        with self._lock:
            if self.role != Role.LEADER:
                return
            idle = self.commit_index == self.log.last_index()
            for peer_id in range(len(self.peers)):
                if peer_id == self.me:
                    continue
                prev = self.next_index[peer_id] - 1
                if prev < self.log.snapshot_index:
                    snap_args = InstallSnapshotArgs(
                        term=self.current_term,
                        leader_id=self.me,
                        last_included_index=self.log.snapshot_index,
                        last_included_term=self.log.snapshot_term,
                        data=self.snapshot_data,
                    )
                    _spawn(self._send_install_snapshot, peer_id, snap_args)
                else:
                    ae_args = AppendEntriesArgs(
                        term=self.current_term,
                        leader_id=self.me,
                        prev_log_index=prev,
                        prev_log_term=self.log.entry(prev).term,
                        entries=self.log.entries_from(prev + 1),
                        leader_commit_index=self.commit_index,
                    )
                    _spawn(self._send_append_entries, peer_id, ae_args)
                idle = idle and prev == self.log.last_index()
            self.heartbeat_interval = IDLE_HEARTBEAT_INTERVAL if idle else BUSY_HEARTBEAT_INTERVAL

    def _send_append_entries(self, server: int, args: AppendEntriesArgs) -> None:
        reply = self.peers[server].call("Raft.AppendEntries", args)
        if reply is None:
            return
        with self._lock:
            if self.role != Role.LEADER or not self.next_index:
                if reply.term > self.current_term:
                    self._step_down(reply.term)
                return
            if reply.success:
                if args.prev_log_index == self.next_index[server] - 1:
                    self.next_index[server] += len(args.entries)
                    self.match_index[server] = self.next_index[server] - 1
            elif reply.term > self.current_term:
                self._step_down(reply.term)
            elif args.prev_log_index == self.next_index[server] - 1:
                conflict = reply.conflict_index
                if conflict < self.log.snapshot_index or conflict > self.log.last_index():
                    self.next_index[server] = conflict + 1
                elif self.log.entry(conflict).term == reply.conflict_term:
                    self.next_index[server] = conflict + 1
                else:
                    self.next_index[server] = self.log.first_index_of_term(conflict)

    def _send_install_snapshot(self, server: int, args: InstallSnapshotArgs) -> None:
        reply = self.peers[server].call("Raft.InstallSnapshot", args)
        if reply is None:
            return
        with self._lock:
            if reply.term > self.current_term:
                self._step_down(reply.term)
            elif self.next_index:
                self.next_index[server] = args.last_included_index + 1
                self.match_index[server] = args.last_included_index

    def _leader_commit(self) -> None:
        with self._lock:
            if self.role != Role.LEADER:
                return
            matches = list(self.match_index)
            matches[self.me] = self.log.last_index()
            matches.sort()
            candidate = matches[len(matches) // 2]
            if candidate <= self.log.snapshot_index:
                return
            if self.log.entry(candidate).term == self.current_term and candidate > self.commit_index:
                self.commit_index = candidate
                self._persist_state()
                self._commit_cond.notify_all()


def make(peers: list[Peer], me: int, persister: Persister, apply_queue: queue.Queue) -> Raft:
    """Create a Raft peer and start its background threads."""
    rf = Raft(peers, me, persister, apply_queue)
    rf.run()
    return rf