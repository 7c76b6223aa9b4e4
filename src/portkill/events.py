"""Events carried on the coordinator's queue."""

from __future__ import annotations

from dataclasses import dataclass

from portkill.models import KillOutcome, KillRequest, ProcessSnapshot, SnapshotDiff


@dataclass(slots=True, frozen=True)
class ScanCompleted:
    """A monitor cycle finished; ``diff`` is relative to the previous cycle."""

    snapshot: ProcessSnapshot
    diff: SnapshotDiff


@dataclass(slots=True, frozen=True)
class KillStarted:
    request: KillRequest


@dataclass(slots=True, frozen=True)
class KillCompleted:
    request: KillRequest
    outcomes: tuple[KillOutcome, ...]


@dataclass(slots=True, frozen=True)
class Shutdown:
    pass


CoordinatorEvent = ScanCompleted | KillStarted | KillCompleted | Shutdown
