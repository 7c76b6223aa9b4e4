"""Port probing: find the processes listening on a TCP port."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from pathlib import Path

import psutil

from portkill.errors import ToolUnavailable
from portkill.models import ProcessInfo

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 1.0

_CGROUP_ID = re.compile(r"(?:docker|cri-containerd|libpod)[-/]([0-9a-f]{64})|/([0-9a-f]{64})(?:\.scope)?$")
_PROXY_COMMANDS = frozenset({"docker-proxy", "com.docker.backend", "vpnkit", "rootlessport"})


class ContainerResolver:
    """
    Map a listening process to the container that owns it.

    Uses cgroup inspection first (Linux processes running inside a
    container) and falls back to asking the docker CLI which container
    publishes the port (for docker-proxy and Docker Desktop listeners).
    """

    def __init__(self, docker: str = "docker", timeout: float = DEFAULT_PROBE_TIMEOUT) -> None:
        path = shutil.which(docker)
        if path is None:
            raise ToolUnavailable(f"container runtime CLI {docker!r} not found")
        self._docker = path
        self._timeout = timeout

    def resolve(self, pid: int, port: int, command: str) -> tuple[str, str | None] | None:
        """Return (container_id, container_name) or None."""
        container_id = self.container_id_from_cgroup(pid)
        if container_id is not None:
            return container_id, self._lookup(["--filter", f"id={container_id}"], by_id=container_id)
        if command in _PROXY_COMMANDS:
            return self._published(port)
        return None

    @staticmethod
    def container_id_from_cgroup(pid: int, proc_root: Path = Path("/proc")) -> str | None:
        try:
            text = (proc_root / str(pid) / "cgroup").read_text()
        except OSError:
            return None
        return parse_cgroup(text)

    def _published(self, port: int) -> tuple[str, str | None] | None:
        lines = self._docker_ps(["--filter", f"publish={port}"])
        for line in lines:
            container_id, _, name = line.partition("\t")
            if container_id:
                return container_id, name or None
        return None

    def _lookup(self, filters: list[str], by_id: str) -> str | None:
        for line in self._docker_ps(filters):
            container_id, _, name = line.partition("\t")
            if by_id.startswith(container_id) or container_id.startswith(by_id):
                return name or None
        return None

    def _docker_ps(self, filters: list[str]) -> list[str]:
        try:
            result = subprocess.run(
                [self._docker, "ps", "--no-trunc", *filters, "--format", "{{.ID}}\t{{.Names}}"],
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("docker ps failed: %s", e)
            return []
        if result.returncode != 0:
            logger.warning("docker ps exited with %d: %s", result.returncode, result.stderr.strip())
            return []
        return [line for line in result.stdout.splitlines() if line.strip()]


def parse_cgroup(text: str) -> str | None:
    """Extract a 64-hex container id from /proc/<pid>/cgroup content."""
    for line in text.splitlines():
        match = _CGROUP_ID.search(line)
        if match:
            return match.group(1) or match.group(2)
    return None


class PortProber(ABC):
    """One-shot query for the processes listening on a TCP port."""

    def __init__(
        self,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        containers: ContainerResolver | None = None,
    ) -> None:
        self.timeout = timeout
        self._containers = containers

    def probe(self, port: int) -> set[ProcessInfo]:
        """
        Return the processes listening on ``port``.

        Never raises for tool failures, timeouts or permission problems;
        those are logged and reported as an empty result.
        """
        found: set[ProcessInfo] = set()
        for pid, command in self._listeners(port):
            found.add(self._annotate(ProcessInfo(pid=pid, port=port, command=command)))
        return found

    def begin_cycle(self) -> None:
        """Called before a batch of probes; may cache shared state."""

    def end_cycle(self) -> None:
        """Called after a batch of probes; drops anything cached."""

    @abstractmethod
    def _listeners(self, port: int) -> list[tuple[int, str]]:
        """Return (pid, command) pairs listening on the port."""

    def _annotate(self, info: ProcessInfo) -> ProcessInfo:
        if self._containers is None:
            return info
        container = self._containers.resolve(info.pid, info.port, info.command)
        if container is None:
            return info
        container_id, container_name = container
        return ProcessInfo(
            pid=info.pid,
            port=info.port,
            command=info.command,
            container_id=container_id,
            container_name=container_name,
        )


class PsutilPortProber(PortProber):
    """
    Probe using psutil's socket table (Linux and Windows).

    Sockets whose owner cannot be determined (other users' processes
    without privileges) are skipped. Within a cycle the socket table is
    read once and shared by every port's probe.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        containers: ContainerResolver | None = None,
    ) -> None:
        super().__init__(timeout, containers)
        self._table: dict[int, set[int]] | None = None

    def begin_cycle(self) -> None:
        self._table = self._read_table()

    def end_cycle(self) -> None:
        self._table = None

    @staticmethod
    def _read_table() -> dict[int, set[int]]:
        """Map each listening port to the PIDs that own it."""
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            logger.warning("Permission denied reading the socket table")
            return {}
        except OSError as e:
            logger.warning("Failed to read the socket table: %s", e)
            return {}

        table: dict[int, set[int]] = {}
        for conn in connections:
            if conn.status == psutil.CONN_LISTEN and conn.laddr and conn.pid:
                table.setdefault(conn.laddr.port, set()).add(conn.pid)
        return table

    def _listeners(self, port: int) -> list[tuple[int, str]]:
        table = self._table if self._table is not None else self._read_table()
        pids = table.get(port, set())

        listeners: list[tuple[int, str]] = []
        for pid in sorted(pids):
            try:
                name = psutil.Process(pid).name()
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                continue
            except psutil.AccessDenied:
                logger.debug("Permission denied resolving PID %d on port %d", pid, port)
                continue
            listeners.append((pid, name))
        return listeners


class LsofPortProber(PortProber):
    """Probe using ``lsof`` (macOS, where psutil needs root for sockets)."""

    def __init__(
        self,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        containers: ContainerResolver | None = None,
        lsof: str = "lsof",
    ) -> None:
        super().__init__(timeout, containers)
        path = shutil.which(lsof)
        if path is None:
            raise ToolUnavailable(f"{lsof!r} not found")
        self._lsof = path

    def _listeners(self, port: int) -> list[tuple[int, str]]:
        try:
            result = subprocess.run(
                [self._lsof, "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-F", "pc"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning("lsof timed out probing port %d", port)
            return []
        except OSError as e:
            logger.warning("lsof failed probing port %d: %s", port, e)
            return []
        # lsof exits 1 when nothing matches
        if result.returncode not in (0, 1):
            logger.warning("lsof exited with %d probing port %d", result.returncode, port)
            return []
        return parse_lsof_fields(result.stdout)


def parse_lsof_fields(output: str) -> list[tuple[int, str]]:
    """Parse ``lsof -F pc`` output into (pid, command) pairs."""
    listeners: dict[int, str] = {}
    pid: int | None = None
    for line in output.splitlines():
        if not line:
            continue
        tag, value = line[0], line[1:]
        if tag == "p":
            try:
                pid = int(value)
            except ValueError:
                pid = None
                continue
            listeners.setdefault(pid, "")
        elif tag == "c" and pid is not None:
            listeners[pid] = value
    return sorted(listeners.items())


def select_prober(
    include_containers: bool = False,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    platform: str | None = None,
) -> PortProber:
    """
    Pick the prober for this platform.

    Raises:
        ToolUnavailable: The required OS tool (or docker, when containers
            are included) is missing.
    """
    platform = platform or sys.platform
    containers = ContainerResolver(timeout=timeout) if include_containers else None
    if platform == "darwin":
        prober: PortProber = LsofPortProber(timeout, containers)
    else:
        prober = PsutilPortProber(timeout, containers)
    logger.debug("Using %s on %s", type(prober).__name__, platform)
    return prober
