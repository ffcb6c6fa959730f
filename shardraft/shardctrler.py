"""Shard controller data types and the clerk that talks to its replicas.

Join(servers) adds groups, Leave(gids) removes them, Move(shard, gid) hands one
shard to a group, and Query(num) fetches config ``num`` (or the latest when
``num`` is -1). Config 0 has no groups and every shard on group 0.
"""

from __future__ import annotations

import enum
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

NSHARDS = 10


class Endpoint(Protocol):
    """Something that can deliver an RPC; returns None when the call fails."""

    def call(self, method: str, args: Any) -> Any: ...


class Err(str, enum.Enum):
    OK = "OK"


@dataclass
class Config:
    """An assignment of shards to replica groups."""

    num: int = 0
    shards: list[int] = field(default_factory=lambda: [0] * NSHARDS)
    groups: dict[int, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.shards) != NSHARDS:
            raise ValueError(f"a config needs exactly {NSHARDS} shards, got {len(self.shards)}")


@dataclass
class JoinArgs:
    servers: dict[int, list[str]] = field(default_factory=dict)


@dataclass
class JoinReply:
    wrong_leader: bool = False
    err: Err | None = None


@dataclass
class LeaveArgs:
    gids: list[int] = field(default_factory=list)


@dataclass
class LeaveReply:
    wrong_leader: bool = False
    err: Err | None = None


@dataclass
class MoveArgs:
    shard: int = 0
    gid: int = 0


@dataclass
class MoveReply:
    wrong_leader: bool = False
    err: Err | None = None


@dataclass
class QueryArgs:
    num: int = -1


@dataclass
class QueryReply:
    wrong_leader: bool = False
    err: Err | None = None
    config: Config = field(default_factory=Config)


def nrand() -> int:
    """Return a random non-negative integer below 2**62."""
    return secrets.randbelow(1 << 62)


class Clerk:
    """Client of the shard controller; retries every replica until one leads."""

    def __init__(self, servers: list[Endpoint], retry_interval: float = 0.1) -> None:
        self.servers = list(servers)
        self.retry_interval = retry_interval

    def _call(self, method: str, args: Any) -> Any:
        while True:
            for srv in self.servers:
                reply = srv.call(method, args)
                if reply is not None and not reply.wrong_leader:
                    return reply
            time.sleep(self.retry_interval)

    def query(self, num: int) -> Config:
        """Fetch config ``num``, or the latest one when ``num`` is -1."""
        return self._call("ShardCtrler.Query", QueryArgs(num=num)).config

    def join(self, servers: dict[int, list[str]]) -> None:
        self._call("ShardCtrler.Join", JoinArgs(servers=servers))

    def leave(self, gids: list[int]) -> None:
        self._call("ShardCtrler.Leave", LeaveArgs(gids=list(gids)))

    def move(self, shard: int, gid: int) -> None:
        self._call("ShardCtrler.Move", MoveArgs(shard=shard, gid=gid))