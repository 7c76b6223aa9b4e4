"""Watch configuration for portkill."""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from portkill.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_RANGES: tuple[tuple[int, int, str], ...] = (
    (3000, 3010, "React, Next.js, development servers"),
    (5000, 5010, "Flask, Vite, PostgreSQL, development"),
    (8000, 8010, "Django, FastAPI, general HTTP servers"),
)
DEFAULT_IGNORE_PORTS = frozenset({5353, 7000})
DEFAULT_IGNORE_PATTERNS = frozenset(
    {
        "Google",
        "Adobe",
        "Dropbox",
        "Cursor",
        "Figma",
        "Raycast",
        "ControlCe",
        "sharingd",
        "rapportd",
    }
)
DEFAULT_SCAN_INTERVAL = 2.0


@dataclass(slots=True, frozen=True)
class WatchConfig:
    """Validated set of ports to watch and processes to leave alone."""

    ports: tuple[int, ...]
    ignore_ports: frozenset[int] = frozenset()
    ignore_patterns: frozenset[str] = frozenset()
    scan_interval: float = DEFAULT_SCAN_INTERVAL
    include_containers: bool = False
    show_pid: bool = False
    description: str = field(default="", compare=False)

    def effective_ports(self) -> tuple[int, ...]:
        """Watched ports minus ignored ports, in configured order."""
        return tuple(p for p in self.ports if p not in self.ignore_ports)

    def describe(self) -> str:
        if self.description:
            return self.description
        return "ports: " + ", ".join(str(p) for p in self.effective_ports())


def _check_port(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"invalid port: {value!r}")
    if not 1 <= value <= 65535:
        raise ConfigError(f"port out of range: {value}")
    return value


def expand_ranges(ranges: list[tuple[int, int]]) -> tuple[int, ...]:
    """Expand inclusive (start, end) ranges into an ordered, de-duplicated tuple."""
    ports: list[int] = []
    for start, end in ranges:
        _check_port(start)
        _check_port(end)
        if end < start:
            raise ConfigError(f"invalid port range: {start}-{end}")
        ports.extend(range(start, end + 1))
    return tuple(dict.fromkeys(ports))


def parse_ports(value: str) -> tuple[int, ...]:
    """
    Parse a port list such as ``"3000,5173,8000-8002"``.

    Raises:
        ConfigError: A token is not a port or range, or is out of range.
    """
    ranges: list[tuple[int, int]] = []
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        start_s, sep, end_s = token.partition("-")
        try:
            start = int(start_s)
            end = int(end_s) if sep else start
        except ValueError:
            raise ConfigError(f"invalid port: {token!r}") from None
        ranges.append((start, end))
    if not ranges:
        raise ConfigError("no ports given")
    return expand_ranges(ranges)


def default_config() -> WatchConfig:
    """The out-of-the-box watch configuration."""
    return WatchConfig(
        ports=expand_ranges([(start, end) for start, end, _ in DEFAULT_RANGES]),
        ignore_ports=DEFAULT_IGNORE_PORTS,
        ignore_patterns=DEFAULT_IGNORE_PATTERNS,
        description=_describe_ranges(DEFAULT_RANGES),
    )


def _describe_ranges(ranges: tuple[tuple[int, int, str], ...]) -> str:
    parts = [f"{start}-{end} ({desc})" if desc else f"{start}-{end}" for start, end, desc in ranges]
    return "port ranges: " + ", ".join(parts)


def config_from_dict(data: dict[str, Any]) -> WatchConfig:
    """
    Build a WatchConfig from the parsed TOML document.

    Supported tables: ``[discovery]`` (``mode = "range" | "specific"``),
    ``[ports]`` (``ranges``, ``specific``), ``[ignore]`` (``ports``,
    ``processes``) and ``[app]`` (``monitoring_interval_seconds``,
    ``show_process_ids``, ``docker``). Missing keys fall back to defaults.
    """
    defaults = default_config()
    try:
        discovery = data.get("discovery", {})
        ports_table = data.get("ports", {})
        ignore = data.get("ignore", {})
        app = data.get("app", {})

        mode = discovery.get("mode", "range")
        if mode == "range":
            raw_ranges = ports_table.get("ranges")
            if raw_ranges is None:
                ports, description = defaults.ports, defaults.description
            else:
                triples = tuple(
                    (r["start"], r["end"], r.get("description", "")) for r in raw_ranges
                )
                ports = expand_ranges([(s, e) for s, e, _ in triples])
                description = _describe_ranges(triples)
        elif mode == "specific":
            ports = tuple(dict.fromkeys(_check_port(p) for p in ports_table.get("specific", [])))
            description = "specific ports: " + ", ".join(str(p) for p in ports)
        else:
            raise ConfigError(f"unsupported discovery mode: {mode!r}")

        if not ports:
            raise ConfigError("no ports to monitor")

        ignore_ports = frozenset(
            _check_port(p) for p in ignore.get("ports", defaults.ignore_ports)
        )
        ignore_patterns = frozenset(
            str(p) for p in ignore.get("processes", defaults.ignore_patterns)
        )
        interval = float(app.get("monitoring_interval_seconds", DEFAULT_SCAN_INTERVAL))
        if interval <= 0:
            raise ConfigError(f"invalid monitoring interval: {interval}")

        return WatchConfig(
            ports=ports,
            ignore_ports=ignore_ports,
            ignore_patterns=ignore_patterns,
            scan_interval=interval,
            include_containers=bool(app.get("docker", False)),
            show_pid=bool(app.get("show_process_ids", False)),
            description=description,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"malformed configuration: {e}") from e


def load_config(path: Path | str | None) -> WatchConfig:
    """
    Load a WatchConfig from a TOML file.

    A missing file yields the default configuration.

    Raises:
        ConfigError: The file cannot be read or parsed.
    """
    if path is None:
        return default_config()
    path = Path(path)
    if not path.exists():
        logger.info("Config file %s not found, using defaults", path)
        return default_config()
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"failed to read config file {path}: {e}") from e
    config = config_from_dict(data)
    logger.info("Loaded configuration from %s", path)
    return config
