"""Snapshot building: run the prober over the watch set."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from fnmatch import fnmatchcase

from portkill.errors import ProbeTimeout
from portkill.models import ProcessInfo, ProcessSnapshot
from portkill.prober import PortProber

logger = logging.getLogger(__name__)

_GLOB_CHARS = frozenset("*?[")


class ScanCancelled(Exception):
    """Raised when a scan is abandoned because shutdown was requested."""


@dataclass(slots=True, frozen=True)
class ScanResult:
    """A built snapshot plus the ports whose probe failed or timed out."""

    snapshot: ProcessSnapshot
    failed_ports: frozenset[int] = frozenset()


def matches_ignore(command: str, patterns: Iterable[str]) -> bool:
    """
    Check a command name against the ignore patterns.

    Patterns containing glob characters are matched with fnmatch; plain
    names must match exactly.
    """
    for pattern in patterns:
        if _GLOB_CHARS.intersection(pattern):
            if fnmatchcase(command, pattern):
                return True
        elif command == pattern:
            return True
    return False


class SnapshotBuilder:
    """
    Build a ProcessSnapshot by probing every effective port.

    Probes run concurrently on a small thread pool. Each probe gets
    ``prober.timeout`` seconds from the moment it starts; one that misses
    it is treated as empty for this cycle. Probes still queued once the
    whole batch has had ``prober.timeout`` per round of workers (plus one
    round of slack) are failed too, so hung probes cannot hold the scan.
    """

    def __init__(self, prober: PortProber, max_workers: int = 8) -> None:
        self._prober = prober
        self._max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="PortProbe")

    @property
    def prober(self) -> PortProber:
        return self._prober

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def build(
        self,
        watch_ports: Sequence[int],
        ignore_ports: Iterable[int] = (),
        ignore_patterns: Iterable[str] = (),
    ) -> ProcessSnapshot:
        return self.scan(watch_ports, ignore_ports, ignore_patterns).snapshot

    def scan(
        self,
        watch_ports: Sequence[int],
        ignore_ports: Iterable[int] = (),
        ignore_patterns: Iterable[str] = (),
        cancel: threading.Event | None = None,
    ) -> ScanResult:
        """
        Probe the watch set and assemble a snapshot.

        Raises:
            ScanCancelled: ``cancel`` was set while probes were outstanding.
        """
        ignored = frozenset(ignore_ports)
        patterns = frozenset(ignore_patterns)
        ports = [p for p in dict.fromkeys(watch_ports) if p not in ignored]

        self._prober.begin_cycle()
        try:
            futures, failed = self._run_probes(ports, cancel)
        finally:
            self._prober.end_cycle()

        found: list[ProcessInfo] = []
        for future, port in sorted(futures.items(), key=lambda item: item[1]):
            if port in failed:
                continue
            try:
                infos = future.result()
            except Exception:
                logger.warning("Probe of port %d failed", port, exc_info=True)
                failed.add(port)
                continue
            for info in sorted(infos, key=lambda i: i.pid):
                # Filtered after probing so ignore changes apply next cycle
                if matches_ignore(info.command, patterns):
                    logger.debug(
                        "Ignoring %s (PID %d) on port %d", info.command, info.pid, info.port
                    )
                    continue
                found.append(info)

        return ScanResult(snapshot=ProcessSnapshot(found), failed_ports=frozenset(failed))

    def _run_probes(
        self,
        ports: list[int],
        cancel: threading.Event | None,
    ) -> tuple[dict[Future[set[ProcessInfo]], int], set[int]]:
        timeout = self._prober.timeout
        started: dict[int, float] = {}

        def timed_probe(port: int) -> set[ProcessInfo]:
            started[port] = time.monotonic()
            return self._prober.probe(port)

        futures: dict[Future[set[ProcessInfo]], int] = {
            self._executor.submit(timed_probe, port): port for port in ports
        }
        rounds = math.ceil(len(ports) / self._max_workers) + 1
        batch_deadline = time.monotonic() + timeout * rounds

        failed: set[int] = set()
        pending = set(futures)
        while pending:
            if cancel is not None and cancel.is_set():
                for future in pending:
                    future.cancel()
                raise ScanCancelled()

            now = time.monotonic()
            for future in list(pending):
                if future.done():
                    continue
                port = futures[future]
                began = started.get(port)
                if now >= batch_deadline or (began is not None and now - began >= timeout):
                    future.cancel()
                    pending.discard(future)
                    failed.add(port)
                    logger.warning("%s", ProbeTimeout(port, timeout))
            if not pending:
                break
            _, pending = wait(pending, timeout=0.05, return_when=FIRST_COMPLETED)
        return futures, failed
