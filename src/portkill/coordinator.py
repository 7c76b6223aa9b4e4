"""Update coordination: decide when snapshot changes reach subscribers."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from queue import Empty, Queue

from portkill.events import (
    CoordinatorEvent,
    KillCompleted,
    KillStarted,
    ScanCompleted,
    Shutdown,
)
from portkill.models import EMPTY_SNAPSHOT, ProcessSnapshot, SnapshotDiff, SnapshotUpdate

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CoordinatorState:
    """Mutable state owned by the coordinator thread."""

    last_emitted_snapshot: ProcessSnapshot = EMPTY_SNAPSHOT
    last_emit_time: float | None = None
    pending_diff: SnapshotDiff | None = None
    suppression_window_active: bool = False
    window_deadline: float = 0.0
    latest_snapshot: ProcessSnapshot = EMPTY_SNAPSHOT


class UpdateCoordinator:
    """
    Forward monitor diffs to subscribers, batching them around kills.

    Every event (scan results and kill notifications) arrives on one FIFO
    queue and is handled by a single thread, so the state is never
    mutated concurrently. Outside a suppression window each non-empty diff
    is forwarded immediately. A kill opens (or extends) the window; diffs
    seen while it is open are merged and emitted as one update when it
    closes, unless their net effect is empty.
    """

    def __init__(
        self,
        suppression_window: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the UpdateCoordinator.

        Args:
            suppression_window: Seconds to batch updates after a kill.
            clock: Monotonic time source.
        """
        self.events: Queue[CoordinatorEvent] = Queue()
        self._window = suppression_window
        self._clock = clock
        self._state = CoordinatorState()
        self._subscribers: list[Queue[SnapshotUpdate]] = []
        self._subscribers_lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def suppression_window(self) -> float:
        return self._window

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def current_snapshot(self) -> ProcessSnapshot:
        """The most recent snapshot observed by the monitor."""
        return self._state.latest_snapshot

    def subscribe(self) -> Queue[SnapshotUpdate]:
        """Register a subscriber; updates are put on the returned queue."""
        queue: Queue[SnapshotUpdate] = Queue()
        with self._subscribers_lock:
            self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: Queue[SnapshotUpdate]) -> None:
        with self._subscribers_lock:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def post(self, event: CoordinatorEvent) -> None:
        """Enqueue an event for the coordinator thread."""
        self.events.put(event)

    def start(self) -> None:
        """Start the coordinator thread."""
        if self.is_running:
            return
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="UpdateCoordinator",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the coordinator thread after it drains queued events."""
        if self._thread is None:
            return
        self.post(Shutdown())
        self._thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        while True:
            try:
                event = self.events.get(timeout=self._time_to_deadline())
            except Empty:
                self.poll()
                continue
            if isinstance(event, Shutdown):
                break
            self.handle(event)

    def _time_to_deadline(self) -> float | None:
        if not self._state.suppression_window_active:
            return None
        return max(0.0, self._state.window_deadline - self._clock())

    def poll(self) -> None:
        """Close the suppression window if it has expired."""
        state = self._state
        if state.suppression_window_active and self._clock() >= state.window_deadline:
            self._close_window()

    def handle(self, event: CoordinatorEvent) -> None:
        """Apply one event to the coordinator state."""
        self.poll()
        if isinstance(event, ScanCompleted):
            self._on_scan(event)
        elif isinstance(event, (KillStarted, KillCompleted)):
            # The next real scan reports the effect of the kill
            self._open_window()

    def _on_scan(self, event: ScanCompleted) -> None:
        state = self._state
        state.latest_snapshot = event.snapshot
        if state.suppression_window_active:
            if state.pending_diff is None:
                state.pending_diff = event.diff
            else:
                state.pending_diff = state.pending_diff.merge(event.diff)
            return
        if not event.diff.is_empty:
            self._emit(event.snapshot, event.diff)

    def _open_window(self) -> None:
        state = self._state
        if not state.suppression_window_active:
            logger.debug("Suppression window opened for %.1fs", self._window)
        state.suppression_window_active = True
        state.window_deadline = self._clock() + self._window

    def _close_window(self) -> None:
        state = self._state
        pending = state.pending_diff
        state.suppression_window_active = False
        state.pending_diff = None
        if pending is None or pending.is_empty:
            logger.debug("Suppression window closed with no net change")
            return
        logger.debug(
            "Suppression window closed: %d added, %d removed",
            len(pending.added),
            len(pending.removed),
        )
        self._emit(state.latest_snapshot, pending)

    def _emit(self, snapshot: ProcessSnapshot, diff: SnapshotDiff) -> None:
        state = self._state
        state.last_emitted_snapshot = snapshot
        state.last_emit_time = self._clock()
        update = SnapshotUpdate(snapshot=snapshot, diff=diff)
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for queue in subscribers:
            queue.put(update)
