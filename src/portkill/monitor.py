"""Port monitoring engine for portkill."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from queue import Queue

from portkill.config import WatchConfig
from portkill.events import CoordinatorEvent, ScanCompleted
from portkill.models import EMPTY_SNAPSHOT, ProcessSnapshot, SnapshotDiff, diff_snapshots
from portkill.snapshot import ScanCancelled, SnapshotBuilder

logger = logging.getLogger(__name__)


class MonitorState(Enum):
    """Lifecycle states of the ProcessMonitor loop."""

    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    STOPPED = "stopped"


class ProcessMonitor:
    """
    Monitor that scans the watched ports on a fixed interval.

    Runs in a separate daemon thread. Each cycle builds a snapshot, diffs
    it against the previous one and pushes a ScanCompleted event onto the
    coordinator's queue, even when nothing changed. Probe failures never
    stop the loop.
    """

    def __init__(
        self,
        builder: SnapshotBuilder,
        config: WatchConfig,
        events: Queue[CoordinatorEvent],
    ) -> None:
        """
        Initialize the ProcessMonitor.

        Args:
            builder: Snapshot builder wrapping the platform prober.
            config: Ports to watch and ignore lists.
            events: Queue the coordinator consumes.
        """
        self._builder = builder
        self._config = config
        self._events = events
        self._interval = config.scan_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._baseline: ProcessSnapshot = EMPTY_SNAPSHOT
        self._state = MonitorState.IDLE
        self._cycles = 0

    @property
    def interval(self) -> float:
        """Get the scan interval."""
        return self._interval

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def baseline(self) -> ProcessSnapshot:
        """The snapshot retained from the last completed cycle."""
        return self._baseline

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._state = MonitorState.IDLE
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="ProcessMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the monitoring thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._state = MonitorState.STOPPED

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except ScanCancelled:
                logger.debug("Scan abandoned on shutdown")
                break
            except Exception:
                # Keep the loop running; the next cycle retries
                logger.exception("Scan cycle failed")
                self._state = MonitorState.IDLE

            # Wait for the interval or until stop is requested
            self._stop_event.wait(timeout=self._interval)
        self._state = MonitorState.STOPPED

    def run_cycle(self) -> tuple[ProcessSnapshot, SnapshotDiff]:
        """
        Run one Scanning -> Diffing -> Idle cycle.

        Ports whose probe failed keep their previous entry, so a failed scan
        yields an unchanged diff rather than spurious removals.

        Raises:
            ScanCancelled: Shutdown was requested while probes were running;
                nothing is published for the abandoned cycle.
        """
        config = self._config
        self._state = MonitorState.SCANNING
        try:
            result = self._builder.scan(
                config.ports,
                config.ignore_ports,
                config.ignore_patterns,
                cancel=self._stop_event,
            )
        except ScanCancelled:
            self._state = MonitorState.IDLE
            raise

        self._state = MonitorState.DIFFING
        snapshot = result.snapshot
        if result.failed_ports:
            carried = [info for port, info in self._baseline.items() if port in result.failed_ports]
            snapshot = ProcessSnapshot([*snapshot.values(), *carried])
        diff = diff_snapshots(self._baseline, snapshot)
        if not diff.is_empty:
            logger.debug(
                "Cycle %d: %d added, %d removed", self._cycles, len(diff.added), len(diff.removed)
            )
        self._baseline = snapshot
        self._cycles += 1
        self._events.put(ScanCompleted(snapshot=snapshot, diff=diff))
        self._state = MonitorState.IDLE
        return snapshot, diff
