"""Data models for portkill."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Immutable record of a process listening on a watched port."""

    pid: int
    port: int
    command: str = field(compare=False)
    container_id: str | None = field(default=None, compare=False)
    container_name: str | None = field(default=None, compare=False)

    @property
    def key(self) -> tuple[int, int]:
        """Identity of the record: (pid, port)."""
        return (self.pid, self.port)

    @property
    def in_container(self) -> bool:
        return self.container_id is not None


class ProcessSnapshot(Mapping[int, ProcessInfo]):
    """
    Immutable, port-ordered mapping of port -> ProcessInfo.

    A port that is absent was not observed during the cycle; it is not a
    guarantee that nothing listens on it.
    """

    __slots__ = ("_entries",)

    def __init__(self, processes: Iterable[ProcessInfo] = ()) -> None:
        entries: dict[int, ProcessInfo] = {}
        for info in sorted(processes, key=lambda p: (p.port, p.pid)):
            # One process per port; the lowest PID wins
            entries.setdefault(info.port, info)
        self._entries = entries

    def __getitem__(self, port: int) -> ProcessInfo:
        return self._entries[port]

    def __iter__(self) -> Iterator[int]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProcessSnapshot):
            return NotImplemented
        return self.processes() == other.processes()

    def __hash__(self) -> int:
        return hash(self.processes())

    def __repr__(self) -> str:
        return f"ProcessSnapshot({list(self._entries.values())!r})"

    def processes(self) -> frozenset[ProcessInfo]:
        """The set of ProcessInfo records, ignoring port order."""
        return frozenset(self._entries.values())

    def pids(self) -> list[int]:
        """Distinct PIDs in port order."""
        return list(dict.fromkeys(info.pid for info in self._entries.values()))

    def find_pid(self, pid: int) -> ProcessInfo | None:
        for info in self._entries.values():
            if info.pid == pid:
                return info
        return None


EMPTY_SNAPSHOT = ProcessSnapshot()


@dataclass(slots=True, frozen=True)
class SnapshotDiff:
    """Processes added and removed between two snapshots."""

    added: frozenset[ProcessInfo] = frozenset()
    removed: frozenset[ProcessInfo] = frozenset()
    unchanged_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed

    def merge(self, later: SnapshotDiff) -> SnapshotDiff:
        """
        Compose this diff with one computed after it.

        A process removed then re-added (or added then removed) cancels out,
        so the result is the net change across both intervals.
        """
        added = (self.added - later.removed) | (later.added - self.removed)
        removed = (self.removed - later.added) | (later.removed - self.added)
        return SnapshotDiff(
            added=frozenset(added),
            removed=frozenset(removed),
            unchanged_count=later.unchanged_count,
        )


EMPTY_DIFF = SnapshotDiff()


def diff_snapshots(old: ProcessSnapshot, new: ProcessSnapshot) -> SnapshotDiff:
    """Compute the set difference of two snapshots on (pid, port) identity."""
    before = old.processes()
    after = new.processes()
    return SnapshotDiff(
        added=after - before,
        removed=before - after,
        unchanged_count=len(before & after),
    )


def apply_diff(snapshot: ProcessSnapshot, diff: SnapshotDiff) -> ProcessSnapshot:
    """Apply a diff to a snapshot, producing the snapshot it leads to."""
    return ProcessSnapshot((snapshot.processes() - diff.removed) | diff.added)


@dataclass(slots=True, frozen=True)
class SnapshotUpdate:
    """An update delivered to subscribers of the snapshot stream."""

    snapshot: ProcessSnapshot
    diff: SnapshotDiff


# Kill targets


@dataclass(slots=True, frozen=True)
class SinglePid:
    pid: int


@dataclass(slots=True, frozen=True)
class AllTracked:
    pass


@dataclass(slots=True, frozen=True)
class Container:
    container_id: str
    container_name: str | None = None


KillTarget = SinglePid | AllTracked | Container


@dataclass(slots=True, frozen=True)
class KillRequest:
    """A user command to terminate one or more targets."""

    target: KillTarget

    @classmethod
    def pid(cls, pid: int) -> KillRequest:
        return cls(SinglePid(pid))

    @classmethod
    def all(cls) -> KillRequest:
        return cls(AllTracked())

    @classmethod
    def container(cls, container_id: str, container_name: str | None = None) -> KillRequest:
        return cls(Container(container_id, container_name))


class KillMethod(Enum):
    """The termination mechanism that produced an outcome."""

    SIGNAL_TERM = "signal_term"
    SIGNAL_KILL = "signal_kill"
    TASKKILL = "taskkill"
    DOCKER_STOP = "docker_stop"
    DOCKER_RM = "docker_rm"


class KillStatus(Enum):
    """How a kill attempt ended."""

    TERMINATED = "terminated"
    VANISHED = "vanished"
    PERMISSION_DENIED = "permission_denied"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class KillOutcome:
    """Result of terminating one target."""

    target: SinglePid | Container
    status: KillStatus
    method_used: KillMethod
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        # A target that already exited leaves its port free
        return self.status in (KillStatus.TERMINATED, KillStatus.VANISHED)

    def describe(self) -> str:
        """Human-readable one-line summary."""
        if isinstance(self.target, Container):
            name = f"container {self.target.container_name or self.target.container_id[:12]}"
        else:
            name = f"PID {self.target.pid}"
        if self.status is KillStatus.TERMINATED:
            return f"Killed {name} ({self.method_used.value})"
        if self.status is KillStatus.VANISHED:
            return f"{name} had already exited"
        return f"Failed to kill {name}: {self.error or self.status.value}"


@dataclass(slots=True, frozen=True)
class StatusInfo:
    """Status-bar summary of a snapshot."""

    text: str
    tooltip: str

    @classmethod
    def from_snapshot(cls, snapshot: ProcessSnapshot) -> StatusInfo:
        count = len(snapshot)
        text = "9+" if count > 9 else str(count)
        if count == 0:
            tooltip = "No development ports are in use"
        elif count == 1:
            tooltip = "1 development port is in use"
        else:
            tooltip = f"{count} development ports are in use"
        return cls(text=text, tooltip=tooltip)
