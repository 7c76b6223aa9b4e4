"""portkill - Textual console front end."""

from __future__ import annotations

import logging
import os
from concurrent.futures import Future
from pathlib import Path
from queue import Empty, Queue

from textual import work
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.logging import TextualHandler
from textual.widgets import DataTable, Footer, Static

from portkill.config import WatchConfig, load_config
from portkill.models import (
    KillOutcome,
    KillRequest,
    ProcessInfo,
    ProcessSnapshot,
    SnapshotUpdate,
    StatusInfo,
)
from portkill.service import PortKillService

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "portkill" / "config.toml"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Route log records to the Textual console and, optionally, a file."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    if root.handlers:
        return

    formatter = logging.Formatter(LOG_FORMAT)
    console = TextualHandler()
    console.setFormatter(formatter)
    root.addHandler(console)
    if log_file is not None:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(formatter)
        root.addHandler(fh)


def format_process(info: ProcessInfo, show_pid: bool = False) -> str:
    """Menu-style label for a listening process."""
    if info.container_name:
        return f"Port {info.port}: {info.command} [Docker: {info.container_name}]"
    if show_pid:
        return f"Port {info.port}: {info.command} (PID {info.pid})"
    return f"Port {info.port}: {info.command}"


def kill_request_for(info: ProcessInfo) -> KillRequest:
    """The kill request that frees ``info``'s port."""
    if info.container_id is not None:
        return KillRequest.container(info.container_id, info.container_name)
    return KillRequest.pid(info.pid)


class StatusHeader(Static):
    """Header widget showing the number of busy ports."""

    DEFAULT_CSS = """
    StatusHeader {
        height: auto;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, description: str = "", *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._description = description
        self._status = StatusInfo.from_snapshot(ProcessSnapshot())

    @property
    def status(self) -> StatusInfo:
        return self._status

    def on_mount(self) -> None:
        self.update(self._render_text())

    def update_status(self, snapshot: ProcessSnapshot) -> None:
        self._status = StatusInfo.from_snapshot(snapshot)
        self.update(self._render_text())

    def _render_text(self) -> str:
        return (
            f"[b]{self._status.text}[/b] {self._status.tooltip}\n"
            f"[dim]Watching {self._description}[/dim]"
        )


class PortTable(Container):
    """Container for the listening-process table, keyed by port."""

    DEFAULT_CSS = """
    PortTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, show_pid: bool = False, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._show_pid = show_pid
        self._rows: dict[int, ProcessInfo] = {}

    @property
    def rows(self) -> dict[int, ProcessInfo]:
        return dict(self._rows)

    def compose(self) -> ComposeResult:
        yield DataTable(id="port-table")

    def on_mount(self) -> None:
        table = self.query_one("#port-table", DataTable)
        table.cursor_type = "row"
        table.add_column("PORT", key="port", width=7)
        table.add_column("PID", key="pid", width=8)
        table.add_column("COMMAND", key="command", width=24)
        table.add_column("CONTAINER", key="container")

    def update_snapshot(self, snapshot: ProcessSnapshot) -> None:
        """
        Sync the table with a snapshot.

        Rows are keyed by port, so a port whose process changed is rewritten
        in place and a freed port's row is removed.
        """
        table = self.query_one("#port-table", DataTable)

        for port in set(self._rows) - set(snapshot):
            table.remove_row(str(port))
            del self._rows[port]

        for port, info in snapshot.items():
            previous = self._rows.get(port)
            if previous is not None and (previous.pid, previous.command, previous.container_id) == (
                info.pid,
                info.command,
                info.container_id,
            ):
                continue
            if previous is not None:
                table.remove_row(str(port))
            table.add_row(
                str(port),
                str(info.pid) if self._show_pid or info.container_id is None else "-",
                info.command[:24],
                info.container_name or info.container_id or "",
                key=str(port),
            )
            self._rows[port] = info

        if len(self._rows) > 1:
            table.sort("port", key=int)

    def selected(self) -> ProcessInfo | None:
        """The process on the highlighted row, if any."""
        table = self.query_one("#port-table", DataTable)
        if not self._rows or table.cursor_row < 0:
            return None
        try:
            row_key, _ = table.coordinate_to_cell_key(table.cursor_coordinate)
        except Exception:
            return None
        if row_key.value is None:
            return None
        return self._rows.get(int(row_key.value))


class PortKillApp(App):
    """Main portkill application."""

    TITLE = "portkill"
    SUB_TITLE = "Development Port Monitor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #status-header {
        dock: top;
        height: auto;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("k", "kill_selected", "Kill"),
        ("a", "kill_all", "Kill all"),
        ("r", "refresh", "Refresh"),
    ]

    def __init__(
        self,
        config: WatchConfig | None = None,
        service: PortKillService | None = None,
    ) -> None:
        """Initialize the PortKillApp."""
        super().__init__()
        if service is None:
            service = PortKillService(config or load_config(None))
        self._service = service
        self._config = service.config
        self._updates: Queue[SnapshotUpdate] = service.subscribe()

    @property
    def service(self) -> PortKillService:
        return self._service

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield StatusHeader(self._config.describe(), id="status-header")
        yield PortTable(show_pid=self._config.show_pid)
        yield Footer()

    def on_mount(self) -> None:
        """Start monitoring when the app is mounted."""
        self._service.start()
        self._show_snapshot(self._service.current_snapshot())
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the update queue and render the most recent snapshot."""
        latest: SnapshotUpdate | None = None
        while True:
            try:
                latest = self._updates.get_nowait()
            except Empty:
                break
        if latest is not None:
            self._show_snapshot(latest.snapshot)

    def _show_snapshot(self, snapshot: ProcessSnapshot) -> None:
        self.query_one("#status-header", StatusHeader).update_status(snapshot)
        self.query_one(PortTable).update_snapshot(snapshot)

    def action_refresh(self) -> None:
        self._show_snapshot(self._service.current_snapshot())

    def action_kill_selected(self) -> None:
        info = self.query_one(PortTable).selected()
        if info is None:
            self.notify("Nothing selected")
            return
        self._submit(kill_request_for(info), format_process(info, self._config.show_pid))

    def action_kill_all(self) -> None:
        if not self._service.current_snapshot():
            self.notify("No processes to kill")
            return
        self._submit(KillRequest.all(), "all processes")

    def _submit(self, request: KillRequest, label: str) -> None:
        self.notify(f"Killing {label}...")
        self._await_kill(self._service.submit(request))

    @work(thread=True, group="kills")
    def _await_kill(self, future: Future[list[KillOutcome]]) -> None:
        try:
            outcomes = future.result()
        except Exception as e:
            logger.warning("Kill request failed: %s", e)
            self.call_from_thread(self.notify, f"Kill failed: {e}", severity="error")
            return
        self.call_from_thread(self._report_outcomes, outcomes)

    def _report_outcomes(self, outcomes: list[KillOutcome]) -> None:
        if not outcomes:
            self.notify("Nothing to kill")
            return
        for outcome in outcomes:
            self.notify(
                outcome.describe(),
                severity="information" if outcome.succeeded else "error",
            )

    def action_quit(self) -> None:
        """Handle quit action with graceful cleanup."""
        self._service.unsubscribe(self._updates)
        self._service.stop()
        self.exit()

    def on_unmount(self) -> None:
        self._service.stop()


def main() -> None:
    """Entry point for the portkill console application."""
    verbose = os.environ.get("PORTKILL_VERBOSE", "").lower() in ("1", "true", "yes")
    log_file = os.environ.get("PORTKILL_LOG_FILE")
    setup_logging(verbose, Path(log_file) if log_file else None)
    config_path = os.environ.get("PORTKILL_CONFIG") or DEFAULT_CONFIG_PATH
    app = PortKillApp(load_config(config_path))
    app.run()


if __name__ == "__main__":
    main()
