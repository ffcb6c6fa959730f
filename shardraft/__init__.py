"""Raft consensus peer, replicated log, persistent state store, and clerks for a sharded key/value service."""

__version__ = "0.1.0"
__all__ = ["debug", "log", "messages", "persister", "raft", "shardctrler", "shardkv"]