"""Termination engine: escalating kills for processes and containers."""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from queue import Queue

import psutil

from portkill.errors import (
    PermissionDenied,
    TargetVanished,
    TerminationError,
    ToolUnavailable,
)
from portkill.events import CoordinatorEvent, KillCompleted, KillStarted
from portkill.models import (
    AllTracked,
    Container,
    KillMethod,
    KillOutcome,
    KillRequest,
    KillStatus,
    ProcessSnapshot,
    SinglePid,
)
from portkill.snapshot import matches_ignore

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 0.5
DEFAULT_KILL_WAIT = 1.0
DEFAULT_CONTAINER_STOP_TIMEOUT = 10


class ProcessTerminator(ABC):
    """Platform strategy for terminating a single PID."""

    primary_method: KillMethod = KillMethod.SIGNAL_TERM

    @abstractmethod
    def terminate(self, pid: int) -> KillMethod:
        """
        Terminate ``pid`` and return the method that ended it.

        Raises:
            TargetVanished: The process was already gone.
            PermissionDenied: The process cannot be signalled.
            TerminationError: The process survived every method.
        """


class PosixTerminator(ProcessTerminator):
    """SIGTERM, wait up to the grace period, then SIGKILL."""

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD, kill_wait: float = DEFAULT_KILL_WAIT) -> None:
        self.grace_period = grace_period
        self.kill_wait = kill_wait

    def terminate(self, pid: int) -> KillMethod:
        try:
            proc = psutil.Process(pid)
        except psutil.NoSuchProcess:
            raise TargetVanished(f"process {pid} not found", KillMethod.SIGNAL_TERM) from None
        except psutil.AccessDenied:
            raise PermissionDenied(f"permission denied inspecting PID {pid}", KillMethod.SIGNAL_TERM) from None

        logger.info("Sending SIGTERM to PID %d", pid)
        self._signal(proc, proc.terminate, KillMethod.SIGNAL_TERM)
        try:
            # Returns as soon as the process exits
            proc.wait(timeout=self.grace_period)
            return KillMethod.SIGNAL_TERM
        except psutil.TimeoutExpired:
            pass
        except psutil.NoSuchProcess:
            return KillMethod.SIGNAL_TERM

        logger.info("PID %d still running after %.1fs, sending SIGKILL", pid, self.grace_period)
        try:
            self._signal(proc, proc.kill, KillMethod.SIGNAL_KILL)
        except TargetVanished:
            # Exited between the liveness check and SIGKILL
            return KillMethod.SIGNAL_TERM
        try:
            proc.wait(timeout=self.kill_wait)
        except psutil.TimeoutExpired:
            raise TerminationError(
                f"process {pid} still running after SIGKILL", KillMethod.SIGNAL_KILL
            ) from None
        except psutil.NoSuchProcess:
            pass
        return KillMethod.SIGNAL_KILL

    @staticmethod
    def _signal(proc: psutil.Process, send: Callable[[], None], method: KillMethod) -> None:
        try:
            send()
        except psutil.NoSuchProcess:
            raise TargetVanished(f"process {proc.pid} already exited", method) from None
        except psutil.AccessDenied:
            raise PermissionDenied(f"permission denied signalling PID {proc.pid}", method) from None


class WindowsTerminator(ProcessTerminator):
    """A single forceful ``taskkill /F``."""

    primary_method = KillMethod.TASKKILL

    def __init__(self, taskkill: str = "taskkill", timeout: float = 5.0) -> None:
        path = shutil.which(taskkill)
        if path is None:
            raise ToolUnavailable(f"{taskkill!r} not found")
        self._taskkill = path
        self._timeout = timeout

    def terminate(self, pid: int) -> KillMethod:
        method = KillMethod.TASKKILL
        if not psutil.pid_exists(pid):
            raise TargetVanished(f"process {pid} not found", method)
        logger.info("Running taskkill for PID %d", pid)
        try:
            result = subprocess.run(
                [self._taskkill, "/PID", str(pid), "/F"],
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired:
            raise TerminationError(f"taskkill timed out for PID {pid}", method) from None
        except OSError as e:
            raise TerminationError(f"taskkill failed for PID {pid}: {e}", method) from e
        if result.returncode == 0:
            return method
        message = (result.stderr or result.stdout).strip()
        lowered = message.lower()
        if "not found" in lowered:
            raise TargetVanished(f"process {pid} not found", method)
        if "access is denied" in lowered:
            raise PermissionDenied(f"permission denied terminating PID {pid}", method)
        raise TerminationError(message or f"taskkill exited with {result.returncode}", method)


class ContainerTerminator:
    """``docker stop`` with a bounded timeout, then ``docker rm -f``."""

    def __init__(
        self,
        docker: str = "docker",
        stop_timeout: int = DEFAULT_CONTAINER_STOP_TIMEOUT,
    ) -> None:
        path = shutil.which(docker)
        if path is None:
            raise ToolUnavailable(f"container runtime CLI {docker!r} not found")
        self._docker = path
        self.stop_timeout = stop_timeout

    def terminate(self, container_id: str) -> KillMethod:
        logger.info("Stopping container %s", container_id[:12])
        try:
            result = self._run(
                ["stop", "-t", str(self.stop_timeout), container_id],
                timeout=self.stop_timeout + 5,
                method=KillMethod.DOCKER_STOP,
            )
        except subprocess.TimeoutExpired:
            logger.warning("docker stop did not converge for %s, removing", container_id[:12])
        else:
            if result.returncode == 0:
                return KillMethod.DOCKER_STOP
            self._raise_for(result.stderr, container_id, KillMethod.DOCKER_STOP)
            logger.warning("docker stop failed for %s, removing", container_id[:12])

        try:
            result = self._run(
                ["rm", "-f", container_id], timeout=self.stop_timeout + 5, method=KillMethod.DOCKER_RM
            )
        except subprocess.TimeoutExpired:
            raise TerminationError(
                f"docker rm timed out for container {container_id[:12]}", KillMethod.DOCKER_RM
            ) from None
        if result.returncode == 0:
            return KillMethod.DOCKER_RM
        self._raise_for(result.stderr, container_id, KillMethod.DOCKER_RM)
        raise TerminationError(result.stderr.strip() or "docker rm failed", KillMethod.DOCKER_RM)

    def _run(self, args: list[str], timeout: float, method: KillMethod) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                [self._docker, *args], capture_output=True, text=True, timeout=timeout
            )
        except OSError as e:
            raise TerminationError(f"failed to run docker: {e}", method) from e

    @staticmethod
    def _raise_for(stderr: str, container_id: str, method: KillMethod) -> None:
        lowered = stderr.lower()
        if "no such container" in lowered:
            raise TargetVanished(f"container {container_id[:12]} not found", method)
        if "permission denied" in lowered:
            raise PermissionDenied(f"permission denied managing container {container_id[:12]}", method)


def select_process_terminator(
    platform: str | None = None,
    grace_period: float = DEFAULT_GRACE_PERIOD,
) -> ProcessTerminator:
    """
    Pick the process termination strategy for this platform.

    Raises:
        ToolUnavailable: The platform's kill mechanism is missing.
    """
    platform = platform or sys.platform
    if platform == "win32":
        return WindowsTerminator()
    return PosixTerminator(grace_period=grace_period)


class TerminationEngine:
    """
    Execute kill requests and report one outcome per target.

    Targets are processed independently: a failure on one never stops
    the rest. Submitted requests run on a worker pool, decoupled from the
    monitor, and announce themselves on the coordinator's queue so it can
    hold back updates while the OS catches up.
    """

    def __init__(
        self,
        processes: ProcessTerminator,
        snapshot_provider: Callable[[], ProcessSnapshot],
        containers: ContainerTerminator | None = None,
        ignore_patterns: Iterable[str] = (),
        events: Queue[CoordinatorEvent] | None = None,
        max_workers: int = 2,
    ) -> None:
        self._processes = processes
        self._containers = containers
        self._snapshot_provider = snapshot_provider
        self._ignore_patterns = frozenset(ignore_patterns)
        self._events = events
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="Terminator")

    def close(self) -> None:
        """Wait for in-flight kills to finish and release the worker pool."""
        self._executor.shutdown(wait=True)

    def submit(self, request: KillRequest) -> Future[list[KillOutcome]]:
        """
        Run ``request`` in the background; the future yields its outcomes.

        Raises:
            RuntimeError: The engine has been closed.
        """
        started = threading.Event()
        future = self._executor.submit(self._execute_after, started, request)
        # Announced only once the pool has accepted the job
        self._post(KillStarted(request))
        started.set()
        future.add_done_callback(lambda f: self._acknowledge(request, f))
        return future

    def _acknowledge(self, request: KillRequest, future: Future[list[KillOutcome]]) -> None:
        outcomes = () if future.cancelled() or future.exception() else tuple(future.result())
        self._post(KillCompleted(request, outcomes))

    def _execute_after(self, started: threading.Event, request: KillRequest) -> list[KillOutcome]:
        started.wait()
        return self.execute(request)

    def _post(self, event: CoordinatorEvent) -> None:
        if self._events is not None:
            self._events.put(event)

    def execute(self, request: KillRequest) -> list[KillOutcome]:
        """Run ``request`` synchronously."""
        outcomes = [self._kill_one(target) for target in self.resolve_targets(request)]
        failed = sum(1 for outcome in outcomes if not outcome.succeeded)
        logger.info("Kill request finished: %d target(s), %d failed", len(outcomes), failed)
        return outcomes

    def resolve_targets(self, request: KillRequest) -> list[SinglePid | Container]:
        """Expand a request into individual PID and container targets."""
        target = request.target
        if not isinstance(target, AllTracked):
            return [target]

        targets: list[SinglePid | Container] = []
        seen_pids: set[int] = set()
        seen_containers: set[str] = set()
        for info in self._snapshot_provider().values():
            if info.container_id is not None and self._containers is not None:
                if info.container_id not in seen_containers:
                    seen_containers.add(info.container_id)
                    targets.append(Container(info.container_id, info.container_name))
            elif info.pid not in seen_pids:
                seen_pids.add(info.pid)
                targets.append(SinglePid(info.pid))
        return targets

    def _kill_one(self, target: SinglePid | Container) -> KillOutcome:
        if isinstance(target, Container):
            default_method = KillMethod.DOCKER_STOP
        else:
            default_method = self._processes.primary_method
        try:
            if isinstance(target, Container):
                if self._containers is None:
                    return KillOutcome(target, KillStatus.FAILED, default_method, "container support is disabled")
                method = self._containers.terminate(target.container_id)
            else:
                if self._is_ignored(target.pid):
                    logger.info("Refusing to kill ignored PID %d", target.pid)
                    return KillOutcome(target, KillStatus.IGNORED, default_method, "process is on the ignore list")
                method = self._processes.terminate(target.pid)
        except TargetVanished as e:
            logger.info("%s", e)
            return KillOutcome(target, KillStatus.VANISHED, e.method, str(e))
        except PermissionDenied as e:
            logger.warning("%s", e)
            return KillOutcome(target, KillStatus.PERMISSION_DENIED, e.method, str(e))
        except TerminationError as e:
            logger.warning("%s", e)
            return KillOutcome(target, KillStatus.FAILED, e.method, str(e))
        except Exception as e:
            logger.exception("Unexpected error killing %s", target)
            return KillOutcome(target, KillStatus.FAILED, default_method, f"unexpected error: {e}")
        return KillOutcome(target, KillStatus.TERMINATED, method)

    def _is_ignored(self, pid: int) -> bool:
        if not self._ignore_patterns:
            return False
        info = self._snapshot_provider().find_pid(pid)
        if info is not None:
            command = info.command
        else:
            try:
                command = psutil.Process(pid).name()
            except psutil.Error:
                return False
        return matches_ignore(command, self._ignore_patterns)
