"""Runtime wiring of the monitor, coordinator and termination engine."""

from __future__ import annotations

import logging
from concurrent.futures import Future
from queue import Queue

from portkill.config import WatchConfig
from portkill.coordinator import UpdateCoordinator
from portkill.models import KillOutcome, KillRequest, ProcessSnapshot, SnapshotUpdate
from portkill.monitor import ProcessMonitor
from portkill.prober import PortProber, select_prober
from portkill.snapshot import SnapshotBuilder
from portkill.termination import (
    ContainerTerminator,
    ProcessTerminator,
    TerminationEngine,
    select_process_terminator,
)

logger = logging.getLogger(__name__)


class PortKillService:
    """
    The in-process interface presentation layers talk to.

    Platform strategies are selected once here; ToolUnavailable raised by
    that selection surfaces from the constructor, not from scan cycles.
    """

    def __init__(
        self,
        config: WatchConfig,
        prober: PortProber | None = None,
        terminator: ProcessTerminator | None = None,
        containers: ContainerTerminator | None = None,
    ) -> None:
        self.config = config
        if prober is None:
            prober = select_prober(include_containers=config.include_containers)
        if terminator is None:
            terminator = select_process_terminator()
        if containers is None and config.include_containers:
            containers = ContainerTerminator()

        self.coordinator = UpdateCoordinator(suppression_window=config.scan_interval)
        self._builder = SnapshotBuilder(prober)
        self.monitor = ProcessMonitor(self._builder, config, self.coordinator.events)
        self.engine = TerminationEngine(
            terminator,
            snapshot_provider=self.coordinator.current_snapshot,
            containers=containers,
            ignore_patterns=config.ignore_patterns,
            events=self.coordinator.events,
        )

    @property
    def is_running(self) -> bool:
        return self.monitor.is_running

    def start(self) -> None:
        """Start the coordinator and then the monitor loop."""
        logger.info("Monitoring %s", self.config.describe())
        self.coordinator.start()
        self.monitor.start()

    def stop(self) -> None:
        """
        Stop scanning and wait for in-flight kills.

        The monitor stops first so no new cycles are produced; pending kills
        run to completion before the coordinator drains and exits.
        """
        self.monitor.stop()
        self.engine.close()
        self.coordinator.stop()
        self._builder.close()

    def subscribe(self) -> Queue[SnapshotUpdate]:
        return self.coordinator.subscribe()

    def unsubscribe(self, queue: Queue[SnapshotUpdate]) -> None:
        self.coordinator.unsubscribe(queue)

    def current_snapshot(self) -> ProcessSnapshot:
        return self.coordinator.current_snapshot()

    def submit(self, request: KillRequest) -> Future[list[KillOutcome]]:
        """Queue a kill request; the future resolves to its outcomes."""
        return self.engine.submit(request)

    def kill(self, request: KillRequest, timeout: float | None = None) -> list[KillOutcome]:
        """Submit a kill request and block until it finishes."""
        return self.submit(request).result(timeout=timeout)
