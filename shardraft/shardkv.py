"""Sharded key/value service types and its client.

The client asks the shard controller which group owns a key's shard, then
talks to that group, refreshing the configuration whenever it is rejected.
"""

from __future__ import annotations

import enum
import time
from collections.abc import Callable
from dataclasses import dataclass

from shardraft import shardctrler
from shardraft.shardctrler import NSHARDS, Config, Endpoint


class Err(str, enum.Enum):
    OK = "OK"
    NO_KEY = "ErrNoKey"
    WRONG_GROUP = "ErrWrongGroup"
    WRONG_LEADER = "ErrWrongLeader"


@dataclass
class PutAppendArgs:
    key: str
    value: str
    op: str  # "Put" or "Append"


@dataclass
class PutAppendReply:
    err: Err | None = None


@dataclass
class GetArgs:
    key: str


@dataclass
class GetReply:
    err: Err | None = None
    value: str = ""


def key2shard(key: str | bytes) -> int:
    """Return the shard a key belongs to, decided by its first byte."""
    raw = key.encode() if isinstance(key, str) else bytes(key)
    shard = raw[0] if raw else 0
    return shard % NSHARDS


class Clerk:
    """Client of the sharded key/value service."""

    def __init__(
        self,
        ctrlers: list[Endpoint],
        make_end: Callable[[str], Endpoint],
        retry_interval: float = 0.1,
    ) -> None:
        self.sm = shardctrler.Clerk(ctrlers, retry_interval)
        self.config = Config()
        self.make_end = make_end
        self.retry_interval = retry_interval

    def _servers_for(self, key: str) -> list[str] | None:
        gid = self.config.shards[key2shard(key)]
        return self.config.groups.get(gid)

    def _refresh(self) -> None:
        time.sleep(self.retry_interval)
        self.config = self.sm.query(-1)

    def get(self, key: str) -> str:
        """Fetch the value for ``key``; "" if absent. Retries forever."""
        args = GetArgs(key=key)
        while True:
            for name in self._servers_for(key) or ():
                reply = self.make_end(name).call("ShardKV.Get", args)
                if reply is None:
                    continue
                if reply.err in (Err.OK, Err.NO_KEY):
                    return reply.value
                if reply.err == Err.WRONG_GROUP:
                    break
            self._refresh()

    def put_append(self, key: str, value: str, op: str) -> None:
        """Shared implementation of put and append."""
        args = PutAppendArgs(key=key, value=value, op=op)
        while True:
            for name in self._servers_for(key) or ():
                reply = self.make_end(name).call("ShardKV.PutAppend", args)
                if reply is None:
                    continue
                if reply.err == Err.OK:
                    return
                if reply.err == Err.WRONG_GROUP:
                    break
            self._refresh()

    def put(self, key: str, value: str) -> None:
        self.put_append(key, value, "Put")

    def append(self, key: str, value: str) -> None:
        self.put_append(key, value, "Append")