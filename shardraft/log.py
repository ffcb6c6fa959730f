"""A Raft log whose prefix may have been replaced by a snapshot.

The first stored entry always stands for the last entry covered by the
snapshot, so the stored list is never empty and log index ``i`` lives at
position ``i - snapshot_index``.
"""

from __future__ import annotations

from typing import Iterable

from shardraft.debug import ensure
from shardraft.messages import LogEntry


class RaftLog:
    """Log entries addressed by Raft log index."""

    def __init__(
        self,
        entries: Iterable[LogEntry] | None = None,
        snapshot_index: int = 0,
        snapshot_term: int = 0,
    ) -> None:
        stored = [LogEntry(None, snapshot_term)] if entries is None else list(entries)
        if not stored:
            raise ValueError("a raft log needs at least its base entry")
        self._entries = stored
        self.snapshot_index = snapshot_index
        self.snapshot_term = snapshot_term

    @property
    def entries(self) -> tuple[LogEntry, ...]:
        """All stored entries, base entry first."""
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def array_index(self, index: int) -> int:
        """Position in the stored list of log index ``index``."""
        position = index - self.snapshot_index
        ensure(
            position >= 0,
            "index=%d,snapshot_index=%d, array_index=%d",
            index,
            self.snapshot_index,
            position,
        )
        return position

    def entry(self, index: int) -> LogEntry:
        return self._entries[self.array_index(index)]

    def last_index(self) -> int:
        return self.snapshot_index + len(self._entries) - 1

    def last_term(self) -> int:
        return self._entries[-1].term

    def append(self, entry: LogEntry) -> int:
        """Append ``entry`` and return its log index."""
        index = self.snapshot_index + len(self._entries)
        self._entries.append(entry)
        return index

    def entries_from(self, index: int) -> list[LogEntry]:
        """A copy of the entries from log index ``index`` to the end."""
        return self._entries[self.array_index(index):]

    def truncate(self, index: int) -> None:
        """Drop the entry at ``index`` and everything after it."""
        position = self.array_index(index)
        ensure(
            position > 0,
            "cannot truncate at index=%d, snapshot_index=%d",
            index,
            self.snapshot_index,
        )
        del self._entries[position:]

    def compact(self, index: int) -> bool:
        """Discard entries before ``index``, which becomes the snapshot point.

        Returns False when ``index`` is already covered by the snapshot.
        """
        if index <= self.snapshot_index:
            return False
        position = self.array_index(index)
        self.snapshot_term = self._entries[position].term
        self.snapshot_index = index
        self._entries = self._entries[position:]
        return True

    def reset(self, last_included_index: int, last_included_term: int) -> None:
        """Adopt a snapshot ending at ``last_included_index``, keeping any later tail."""
        if self.last_index() > last_included_index:
            self._entries = self._entries[self.array_index(last_included_index):]
        else:
            self._entries = [LogEntry(None, last_included_term)]
        self.snapshot_index = last_included_index
        self.snapshot_term = last_included_term

    def merge(self, prev_index: int, entries: Iterable[LogEntry]) -> None:
        """Store ``entries`` as following ``prev_index``, overwriting any overlap.

        The caller has already checked that the log matches at ``prev_index``.
        """
        incoming = list(entries)
        ensure(
            prev_index <= self.last_index(),
            "prev_index=%d beyond last index %d",
            prev_index,
            self.last_index(),
        )
        if prev_index == 0:
            self._entries = self._entries[:1] + incoming
            return
        if prev_index < self.snapshot_index:
            skip = self.snapshot_index - prev_index
            ensure(
                skip <= len(incoming),
                "entries end before snapshot index %d",
                self.snapshot_index,
            )
            ensure(
                incoming[skip - 1].term == self.snapshot_term,
                "entry term=%d, snapshot_term=%d",
                incoming[skip - 1].term,
                self.snapshot_term,
            )
            self._overwrite(1, incoming[skip:])
            return
        self._overwrite(self.array_index(prev_index + 1), incoming)

    def _overwrite(self, position: int, incoming: list[LogEntry]) -> None:
        overlap = min(len(self._entries) - position, len(incoming))
        overlap = max(overlap, 0)
        self._entries[position:position + overlap] = incoming[:overlap]
        self._entries.extend(incoming[overlap:])

    def first_index_of_term(self, index: int) -> int:
        """The earliest stored index whose term equals that at ``index``.

        Stops just after the base entry, so the result is never below
        ``snapshot_index + 1``.
        """
        position = self.array_index(index)
        term = self._entries[position].term
        while position > 0 and self._entries[position].term == term:
            position -= 1
        return self.snapshot_index + position + 1