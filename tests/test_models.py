"""Tests for portkill data models."""

import random

import pytest

from portkill.models import (
    Container,
    KillMethod,
    KillOutcome,
    KillRequest,
    KillStatus,
    ProcessInfo,
    ProcessSnapshot,
    SinglePid,
    SnapshotDiff,
    StatusInfo,
    AllTracked,
    apply_diff,
    diff_snapshots,
)


def make_snapshot(*pairs: tuple[int, int]) -> ProcessSnapshot:
    return ProcessSnapshot(ProcessInfo(pid=pid, port=port, command=f"proc{pid}") for port, pid in pairs)


def random_snapshot(rng: random.Random) -> ProcessSnapshot:
    ports = rng.sample(range(3000, 3020), rng.randint(0, 10))
    return ProcessSnapshot(
        ProcessInfo(pid=rng.randint(100, 110), port=port, command="node") for port in ports
    )


def test_process_info_is_frozen():
    """Test that ProcessInfo is immutable (frozen)."""
    info = ProcessInfo(pid=1, port=3000, command="node")

    try:
        info.pid = 999
        raise AssertionError("Should have raised FrozenInstanceError")
    except AttributeError:
        pass  # Expected behavior for frozen dataclass


def test_process_info_uses_slots():
    """Test that ProcessInfo uses __slots__."""
    info = ProcessInfo(pid=1, port=3000, command="node")
    assert not hasattr(info, "__dict__")


def test_process_info_identity_is_pid_and_port():
    """Test equality ignores container annotations."""
    plain = ProcessInfo(pid=10, port=3000, command="node")
    annotated = ProcessInfo(pid=10, port=3000, command="node", container_id="abc", container_name="web")

    assert plain == annotated
    assert hash(plain) == hash(annotated)
    assert plain.key == (10, 3000)
    assert annotated.in_container
    assert not plain.in_container
    assert plain != ProcessInfo(pid=11, port=3000, command="node")


def test_renamed_process_is_not_a_change():
    """Test a new command name for the same PID and port yields an empty diff."""
    before = ProcessSnapshot([ProcessInfo(pid=7, port=3000, command="node")])
    after = ProcessSnapshot([ProcessInfo(pid=7, port=3000, command="next-server")])

    diff = diff_snapshots(before, after)

    assert ProcessInfo(pid=7, port=3000, command="node") == ProcessInfo(pid=7, port=3000, command="next-server")
    assert diff.is_empty
    assert not diff.added & diff.removed
    assert diff.unchanged_count == 1


class TestProcessSnapshot:
    """Tests for ProcessSnapshot mapping."""

    def test_snapshot_is_ordered_by_port(self):
        """Test keys iterate in port order regardless of input order."""
        snapshot = make_snapshot((8080, 2), (3000, 1), (5173, 3))
        assert list(snapshot) == [3000, 5173, 8080]

    def test_snapshot_keeps_one_process_per_port(self):
        """Test the lowest PID wins when a port has several listeners."""
        snapshot = make_snapshot((3000, 20), (3000, 10))
        assert len(snapshot) == 1
        assert snapshot[3000].pid == 10

    def test_empty_snapshot(self):
        """Test an empty snapshot behaves like an empty mapping."""
        snapshot = ProcessSnapshot()
        assert len(snapshot) == 0
        assert dict(snapshot) == {}
        assert not snapshot

    def test_snapshot_equality(self):
        """Test snapshots compare by content."""
        assert make_snapshot((3000, 1)) == make_snapshot((3000, 1))
        assert make_snapshot((3000, 1)) != make_snapshot((3000, 2))

    def test_find_pid_and_pids(self):
        """Test PID lookups across ports."""
        snapshot = make_snapshot((3000, 1), (3001, 1), (8080, 2))
        assert snapshot.pids() == [1, 2]
        assert snapshot.find_pid(2).port == 8080
        assert snapshot.find_pid(99) is None


class TestDiff:
    """Tests for snapshot diffing."""

    def test_diff_of_identical_snapshots_is_empty(self):
        """Test diff(S, S) is empty for random snapshots."""
        rng = random.Random(1)
        for _ in range(50):
            snapshot = random_snapshot(rng)
            diff = diff_snapshots(snapshot, snapshot)
            assert diff.is_empty
            assert diff.unchanged_count == len(snapshot)

    def test_diff_is_disjoint_and_applies(self):
        """Test added/removed are disjoint and applying the diff yields S2."""
        rng = random.Random(2)
        for _ in range(100):
            s1 = random_snapshot(rng)
            s2 = random_snapshot(rng)
            diff = diff_snapshots(s1, s2)

            assert not (diff.added & diff.removed)
            assert apply_diff(s1, diff) == s2

    def test_pid_change_on_port(self):
        """Test a new PID on the same port is an add plus a remove."""
        diff = diff_snapshots(make_snapshot((3000, 1)), make_snapshot((3000, 2)))
        assert {p.pid for p in diff.added} == {2}
        assert {p.pid for p in diff.removed} == {1}
        assert diff.unchanged_count == 0

    def test_merge_cancels_reappearing_process(self):
        """Test a removal followed by a re-add merges to nothing."""
        info = ProcessInfo(pid=1, port=3000, command="node")
        removed = SnapshotDiff(removed=frozenset({info}))
        added = SnapshotDiff(added=frozenset({info}))

        assert removed.merge(added).is_empty
        assert added.merge(removed).is_empty

    def test_merge_equals_net_diff(self):
        """Test merging consecutive diffs equals the diff of the endpoints."""
        rng = random.Random(3)
        for _ in range(100):
            s1, s2, s3 = (random_snapshot(rng) for _ in range(3))
            merged = diff_snapshots(s1, s2).merge(diff_snapshots(s2, s3))
            net = diff_snapshots(s1, s3)
            assert merged.added == net.added
            assert merged.removed == net.removed


class TestKillModels:
    """Tests for kill requests and outcomes."""

    def test_request_constructors(self):
        """Test KillRequest convenience constructors."""
        assert KillRequest.pid(42).target == SinglePid(42)
        assert KillRequest.all().target == AllTracked()
        assert KillRequest.container("abc", "web").target == Container("abc", "web")

    @pytest.mark.parametrize(
        "status,succeeded",
        [
            (KillStatus.TERMINATED, True),
            (KillStatus.VANISHED, True),
            (KillStatus.PERMISSION_DENIED, False),
            (KillStatus.IGNORED, False),
            (KillStatus.FAILED, False),
        ],
    )
    def test_outcome_succeeded(self, status, succeeded):
        """Test which statuses count as the port being freed."""
        outcome = KillOutcome(SinglePid(1), status, KillMethod.SIGNAL_TERM)
        assert outcome.succeeded is succeeded

    def test_outcome_describe(self):
        """Test human-readable outcome summaries."""
        killed = KillOutcome(SinglePid(7), KillStatus.TERMINATED, KillMethod.SIGNAL_KILL)
        denied = KillOutcome(
            SinglePid(8), KillStatus.PERMISSION_DENIED, KillMethod.SIGNAL_TERM, "permission denied"
        )
        stopped = KillOutcome(Container("a" * 64, "web"), KillStatus.TERMINATED, KillMethod.DOCKER_STOP)

        assert killed.describe() == "Killed PID 7 (signal_kill)"
        assert "permission denied" in denied.describe()
        assert "container web" in stopped.describe()

    def test_kill_method_values(self):
        """Test KillMethod enum values."""
        assert {m.value for m in KillMethod} == {
            "signal_term",
            "signal_kill",
            "taskkill",
            "docker_stop",
            "docker_rm",
        }


def test_status_info():
    """Test status bar text and tooltip."""
    assert StatusInfo.from_snapshot(ProcessSnapshot()).text == "0"
    assert StatusInfo.from_snapshot(make_snapshot((3000, 1))).tooltip == "1 development port is in use"
    many = make_snapshot(*((3000 + i, i + 1) for i in range(12)))
    assert StatusInfo.from_snapshot(many).text == "9+"
