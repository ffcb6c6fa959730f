from shardraft.shardctrler import NSHARDS, Config, QueryArgs, QueryReply
from shardraft.shardkv import (
    Clerk,
    Err,
    GetArgs,
    GetReply,
    PutAppendArgs,
    PutAppendReply,
    key2shard,
)


class ScriptedEnd:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def call(self, method, args):
        self.calls.append((method, args))
        return self.replies.pop(0) if self.replies else None


class Controller:
    """Hands out configs in sequence; repeats the last one."""

    def __init__(self, configs):
        self.configs = list(configs)
        self.calls = []

    def call(self, method, args):
        self.calls.append((method, args))
        cfg = self.configs.pop(0) if len(self.configs) > 1 else self.configs[0]
        return QueryReply(config=cfg)


def owning(gid, groups, num=1):
    return Config(num=num, shards=[gid] * NSHARDS, groups=groups)


def test_key2shard_empty_key():
    assert key2shard("") == 0


def test_key2shard_uses_first_byte_only():
    assert key2shard("abc") == key2shard("a")
    assert key2shard(b"7xyz") == key2shard("7")


def test_key2shard_digits_cover_all_shards():
    shards = {key2shard(str(i)) for i in range(10)}
    assert shards == set(range(NSHARDS))


def test_get_queries_controller_and_skips_wrong_leader():
    ctrl = Controller([owning(100, {100: ["s1", "s2"]})])
    ends = {
        "s1": ScriptedEnd([GetReply(err=Err.WRONG_LEADER)]),
        "s2": ScriptedEnd([GetReply(err=Err.OK, value="v")]),
    }
    ck = Clerk([ctrl], ends.__getitem__, retry_interval=0)
    assert ck.get("k") == "v"
    assert ctrl.calls == [("ShardCtrler.Query", QueryArgs(num=-1))]
    assert ends["s2"].calls == [("ShardKV.Get", GetArgs(key="k"))]


def test_get_missing_key_returns_empty():
    ctrl = Controller([owning(100, {100: ["s1"]})])
    ends = {"s1": ScriptedEnd([GetReply(err=Err.NO_KEY, value="")])}
    ck = Clerk([ctrl], ends.__getitem__, retry_interval=0)
    assert ck.get("missing") == ""


def test_wrong_group_refreshes_config():
    first = owning(100, {100: ["a1", "a2"]}, num=1)
    second = owning(101, {101: ["b1"]}, num=2)
    ctrl = Controller([first, second])
    ends = {
        "a1": ScriptedEnd([GetReply(err=Err.WRONG_GROUP)]),
        "a2": ScriptedEnd([]),
        "b1": ScriptedEnd([GetReply(err=Err.OK, value="moved")]),
    }
    ck = Clerk([ctrl], ends.__getitem__, retry_interval=0)
    assert ck.get("x") == "moved"
    assert ends["a2"].calls == []
    assert ck.config == second
    assert len(ctrl.calls) == 2


def test_put_and_append_send_op():
    ctrl = Controller([owning(100, {100: ["s1"]})])
    end = ScriptedEnd(
        [None, PutAppendReply(err=Err.OK), PutAppendReply(err=Err.OK)]
    )
    ck = Clerk([ctrl], lambda name: end, retry_interval=0)
    ck.put("k", "v1")
    ck.append("k", "v2")
    assert end.calls[1] == ("ShardKV.PutAppend", PutAppendArgs(key="k", value="v1", op="Put"))
    assert end.calls[2] == ("ShardKV.PutAppend", PutAppendArgs(key="k", value="v2", op="Append"))
    assert len(end.calls) == 3


def test_err_values_match_wire_strings():
    assert Err.NO_KEY == "ErrNoKey"
    assert Err.WRONG_GROUP.value == "ErrWrongGroup"
    assert Err("ErrWrongLeader") is Err.WRONG_LEADER