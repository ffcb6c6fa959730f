"""Thread-safe holder for a Raft peer's persistent state and service snapshot."""

from __future__ import annotations

import threading


def _as_bytes(data: bytes | bytearray | memoryview | None) -> bytes:
    """Return an independent, immutable copy of ``data`` (``None`` becomes empty)."""
    if data is None:
        return b""
    return bytes(data)


class Persister:
    """Stores Raft state and a snapshot so a restarted peer can recover them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._raftstate = b""
        self._snapshot = b""

    def copy(self) -> Persister:
        """Return a fresh persister holding the same state and snapshot."""
        with self._lock:
            other = Persister()
            other._raftstate = self._raftstate
            other._snapshot = self._snapshot
            return other

    def read_raft_state(self) -> bytes:
        with self._lock:
            return self._raftstate

    def raft_state_size(self) -> int:
        with self._lock:
            return len(self._raftstate)

    def save(self, raftstate, snapshot) -> None:
        """Save Raft state and snapshot together as one atomic action."""
        with self._lock:
            self._raftstate = _as_bytes(raftstate)
            self._snapshot = _as_bytes(snapshot)

    def save_raft_state(self, raftstate) -> None:
        """Save only the Raft state, keeping the current snapshot."""
        with self._lock:
            self._raftstate = _as_bytes(raftstate)

    def read_snapshot(self) -> bytes:
        with self._lock:
            return self._snapshot

    def snapshot_size(self) -> int:
        with self._lock:
            return len(self._snapshot)