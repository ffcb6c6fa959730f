"""Raft roles, log entries, RPC messages and persistent-state encoding."""

from __future__ import annotations

import enum
import pickle
from dataclasses import dataclass, field
from typing import Any, Iterable


class Role(enum.IntEnum):
    """The role a Raft peer currently plays."""

    LEADER = 0
    FOLLOWER = 1
    CANDIDATE = 2


@dataclass
class LogEntry:
    """One log entry: a state-machine command and the term it was received in."""

    command: Any = None
    term: int = 0


@dataclass
class ApplyMsg:
    """A committed command or an installed snapshot handed to the service."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0
    snapshot_valid: bool = False
    snapshot: bytes = b""
    snapshot_term: int = 0
    snapshot_index: int = 0

    def __str__(self) -> str:
        if self.command_valid:
            return (
                f"{{CommandValid: {self.command_valid}, Command: {self.command}, "
                f"CommandIndex: {self.command_index}}}"
            )
        if self.snapshot_valid:
            return (
                f"{{ SnapshotValid: {self.snapshot_valid}, SnapshotTerm: {self.snapshot_term}, "
                f"SnapshotIndex: {self.snapshot_index}, Snapshot:{len(self.snapshot)}}}"
            )
        return ""


@dataclass
class RequestVoteArgs:
    term: int
    candidate_id: int
    last_log_index: int
    last_log_term: int

    def __str__(self) -> str:
        return (
            f"{{Term: {self.term}, CandidateId: {self.candidate_id}, "
            f"LastLogIndex: {self.last_log_index}, LastLogTerm: {self.last_log_term} }}"
        )


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False


@dataclass
class AppendEntriesArgs:
    term: int
    leader_id: int
    prev_log_index: int
    prev_log_term: int
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit_index: int = 0

    def __str__(self) -> str:
        return (
            f"{{Term: {self.term}, LeaderId: {self.leader_id}, "
            f"PrevLogIndex: {self.prev_log_index}, PrevLogTerm: {self.prev_log_term}, "
            f"Entries: {len(self.entries)}, LeaderCommitIndex:{self.leader_commit_index} }}"
        )


@dataclass
class AppendEntriesReply:
    term: int = 0
    conflict_term: int = 0
    conflict_index: int = 0
    success: bool = False


@dataclass
class InstallSnapshotArgs:
    term: int
    leader_id: int
    last_included_index: int
    last_included_term: int
    data: bytes = b""

    def __str__(self) -> str:
        return (
            f"{{Term: {self.term}, LeaderId: {self.leader_id}, "
            f"LastIncludedIndex: {self.last_included_index}, "
            f"LastIncludedTerm: {self.last_included_term}, Data: {len(self.data)} }}"
        )


@dataclass
class InstallSnapshotReply:
    term: int = 0


@dataclass(frozen=True)
class PersistentState:
    """The Raft state that must survive a crash."""

    current_term: int
    voted_for: int
    entries: list[LogEntry]
    snapshot_index: int
    snapshot_term: int


def encode_state(
    current_term: int,
    voted_for: int,
    entries: Iterable[LogEntry],
    snapshot_index: int,
    snapshot_term: int,
) -> bytes:
    """Serialise the persistent Raft state to bytes."""
    payload = (
        current_term,
        voted_for,
        [(entry.command, entry.term) for entry in entries],
        snapshot_index,
        snapshot_term,
    )
    return pickle.dumps(payload, protocol=pickle.HIGHEST_PROTOCOL)


def decode_state(data: bytes | None) -> PersistentState | None:
    """Decode bytes made by encode_state; None when there is no saved state."""
    if not data:
        return None
    try:
        payload = pickle.loads(data)
    except Exception as exc:
        raise ValueError(f"cannot decode raft state: {exc}") from exc
    if not isinstance(payload, tuple) or len(payload) != 5:
        raise ValueError("cannot decode raft state: unexpected layout")
    current_term, voted_for, raw_entries, snapshot_index, snapshot_term = payload
    for name, value in (
        ("current_term", current_term),
        ("voted_for", voted_for),
        ("snapshot_index", snapshot_index),
        ("snapshot_term", snapshot_term),
    ):
        if not isinstance(value, int):
            raise ValueError(f"cannot decode raft state: {name} is not an integer")
    try:
        entries = [LogEntry(command, term) for command, term in raw_entries]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"cannot decode raft state: bad log entries ({exc})") from exc
    return PersistentState(current_term, voted_for, entries, snapshot_index, snapshot_term)