import queue
import threading
import time

import pytest

from shardraft.messages import (
    AppendEntriesArgs,
    InstallSnapshotArgs,
    LogEntry,
    RequestVoteArgs,
    decode_state,
)
from shardraft.persister import Persister
from shardraft.raft import Peer, Raft, make

ELECTION = 1.0


def solo(me=0, n=3, persister=None):
    peers = [Peer() for _ in range(n)]
    return Raft(peers, me, persister or Persister(), queue.Queue())


class Cluster:
    def __init__(self, n):
        self.n = n
        self.ends = [[Peer(enabled=True) for _ in range(n)] for _ in range(n)]
        self.connected = [True] * n
        self.logs = [dict() for _ in range(n)]
        self.lock = threading.Lock()
        self.stop = threading.Event()
        self.persisters = [Persister() for _ in range(n)]
        self.rafts = []
        for i in range(n):
            q = queue.Queue()
            self.rafts.append(make(self.ends[i], i, self.persisters[i], q))
            threading.Thread(target=self._collect, args=(i, q), daemon=True).start()
        for i in range(n):
            for j in range(n):
                self.ends[i][j].target = self.rafts[j]

    def _collect(self, i, q):
        while not self.stop.is_set():
            try:
                m = q.get(timeout=0.05)
            except queue.Empty:
                continue
            if m.command_valid:
                with self.lock:
                    self.logs[i][m.command_index] = m.command

    def disconnect(self, i):
        self.connected[i] = False
        for j in range(self.n):
            self.ends[i][j].enabled = False
            self.ends[j][i].enabled = False

    def connect(self, i):
        self.connected[i] = True
        for j in range(self.n):
            if self.connected[j]:
                self.ends[i][j].enabled = True
                self.ends[j][i].enabled = True

    def check_one_leader(self):
        for _ in range(10):
            time.sleep(0.5)
            leaders = {}
            for i, rf in enumerate(self.rafts):
                if self.connected[i]:
                    term, lead = rf.get_state()
                    if lead:
                        leaders.setdefault(term, []).append(i)
            for term, ids in leaders.items():
                assert len(ids) == 1, f"term {term} has {len(ids)} leaders"
            if leaders:
                return leaders[max(leaders)][0]
        pytest.fail("expected one leader, got none")

    def n_committed(self, index):
        with self.lock:
            vals = [log[index] for log in self.logs if index in log]
        assert len(set(vals)) <= 1
        return len(vals), (vals[0] if vals else None)

    def one(self, cmd, expected):
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            index = -1
            for i, rf in enumerate(self.rafts):
                if self.connected[i]:
                    idx, _, ok = rf.start(cmd)
                    if ok:
                        index = idx
                        break
            if index != -1:
                t1 = time.monotonic()
                while time.monotonic() - t1 < 2:
                    nd, c = self.n_committed(index)
                    if nd >= expected and c == cmd:
                        return index
                    time.sleep(0.02)
            else:
                time.sleep(0.05)
        pytest.fail(f"one({cmd}) failed to reach agreement")

    def close(self):
        self.stop.set()
        for rf in self.rafts:
            rf.kill()


@pytest.fixture
def cluster3():
    c = Cluster(3)
    yield c
    c.close()


def test_peer_unknown_method_raises():
    with pytest.raises(ValueError):
        Peer().call("Raft.Nope", None)


def test_peer_disabled_returns_none():
    rf = solo()
    assert Peer(rf, enabled=False).call("Raft.RequestVote", RequestVoteArgs(1, 1, 0, 0)) is None


def test_request_vote_grants_once_per_term():
    rf = solo()
    assert rf.request_vote(RequestVoteArgs(1, 2, 0, 0)).vote_granted is True
    assert rf.request_vote(RequestVoteArgs(1, 1, 0, 0)).vote_granted is False
    assert rf.get_state() == (1, False)


def test_request_vote_rejects_stale_log_but_adopts_term():
    rf = solo()
    rf.append_entries(AppendEntriesArgs(1, 1, 0, 0, [LogEntry("a", 1)], 0))
    reply = rf.request_vote(RequestVoteArgs(2, 2, 5, 0))
    assert reply.vote_granted is False
    assert rf.get_state()[0] == 2


def test_append_entries_success_and_conflict():
    rf = solo()
    ok = rf.append_entries(AppendEntriesArgs(1, 1, 0, 0, [LogEntry("a", 1)], 0))
    assert ok.success is True
    assert rf.get_state() == (1, False)
    bad = rf.append_entries(AppendEntriesArgs(1, 1, 5, 1, [], 0))
    assert (bad.success, bad.conflict_index, bad.conflict_term) == (False, 1, 1)
    stale = rf.append_entries(AppendEntriesArgs(0, 1, 0, 0, [], 0))
    assert stale.success is False and stale.term == 1


def test_start_on_follower_is_rejected():
    assert solo().start("x") == (0, 0, False)


def test_snapshot_trims_and_persists():
    p = Persister()
    rf = solo(persister=p)
    rf.append_entries(AppendEntriesArgs(1, 1, 0, 0, [LogEntry(c, 1) for c in "abc"], 0))
    rf.snapshot(2, b"snap")
    assert p.read_snapshot() == b"snap"
    assert decode_state(p.read_raft_state()).snapshot_index == 2
    rf.snapshot(1, b"old")
    assert p.read_snapshot() == b"snap"


def test_state_survives_restart():
    p = Persister()
    solo(persister=p).request_vote(RequestVoteArgs(3, 1, 0, 0))
    assert solo(persister=p).get_state() == (3, False)


def test_install_snapshot_delivers_apply_msg():
    rf = solo()
    reply = rf.install_snapshot(InstallSnapshotArgs(2, 1, 5, 2, b"x"))
    assert reply.term == 0
    msg = rf.apply_queue.get(timeout=2)
    assert (msg.snapshot_valid, msg.snapshot_index, msg.snapshot) == (True, 5, b"x")


def test_initial_election(cluster3):
    leader = cluster3.check_one_leader()
    time.sleep(0.05)
    terms = {rf.get_state()[0] for rf in cluster3.rafts}
    assert len(terms) == 1 and min(terms) >= 1
    state = decode_state(cluster3.persisters[leader].read_raft_state())
    assert state.current_term == cluster3.rafts[leader].get_state()[0]
    assert state.voted_for == leader


def test_reelection(cluster3):
    leader1 = cluster3.check_one_leader()
    cluster3.disconnect(leader1)
    leader2 = cluster3.check_one_leader()
    assert leader2 != leader1
    state = decode_state(cluster3.persisters[leader2].read_raft_state())
    assert state.voted_for == leader2
    cluster3.connect(leader1)
    assert cluster3.check_one_leader() in range(3)


def test_basic_agree(cluster3):
    for index in range(1, 4):
        assert cluster3.n_committed(index)[0] == 0
        assert cluster3.one(index * 100, 3) == index
    for persister in cluster3.persisters:
        state = decode_state(persister.read_raft_state())
        assert [e.command for e in state.entries[1:4]] == [100, 200, 300]


def test_follower_failure_no_commit_without_majority(cluster3):
    cluster3.one(101, 3)
    leader = cluster3.check_one_leader()
    cluster3.disconnect((leader + 1) % 3)
    cluster3.one(102, 2)
    leader2 = cluster3.check_one_leader()
    cluster3.disconnect((leader2 + 1) % 3)
    cluster3.disconnect((leader2 + 2) % 3)
    index, _, ok = cluster3.rafts[leader2].start(104)
    assert ok is True and index == 3
    time.sleep(2 * ELECTION)
    assert cluster3.n_committed(index)[0] == 0
    state = decode_state(cluster3.persisters[leader2].read_raft_state())
    assert state.current_term == cluster3.rafts[leader2].get_state()[0]