"""Tests for the snapshot builder."""

import threading
import time

import pytest

from portkill.config import default_config
from portkill.models import ProcessInfo
from portkill.prober import PortProber
from portkill.snapshot import ScanCancelled, SnapshotBuilder, matches_ignore


class FakeProber(PortProber):
    """Prober returning canned listeners, optionally slow or failing per port."""

    def __init__(self, listeners=None, slow=(), broken=(), timeout=0.3, delay=5.0, latency=0.0):
        super().__init__(timeout=timeout)
        self.listeners = listeners or {}
        self.slow = set(slow)
        self.broken = set(broken)
        self.delay = delay
        self.latency = latency
        self.probed = []
        self.cycles = []
        self._release = threading.Event()

    def release(self):
        self._release.set()

    def begin_cycle(self):
        self.cycles.append("begin")

    def end_cycle(self):
        self.cycles.append("end")

    def _listeners(self, port):
        self.probed.append(port)
        if self.latency:
            time.sleep(self.latency)
        if port in self.broken:
            raise RuntimeError("probe exploded")
        if port in self.slow:
            self._release.wait(self.delay)
        return self.listeners.get(port, [])


@pytest.fixture
def make_builder():
    builders = []

    def factory(prober, **kwargs):
        builder = SnapshotBuilder(prober, **kwargs)
        builders.append((builder, prober))
        return builder

    yield factory
    for builder, prober in builders:
        prober.release()
        builder.close()


class TestMatchesIgnore:
    """Tests for ignore pattern matching."""

    def test_exact_name(self):
        assert matches_ignore("Dropbox", {"Dropbox"})
        assert not matches_ignore("DropboxHelper", {"Dropbox"})

    def test_glob(self):
        assert matches_ignore("DropboxHelper", {"Dropbox*"})
        assert matches_ignore("com.docker.backend", {"com.docker.*"})
        assert not matches_ignore("node", {"Dropbox*", "py?"})

    def test_case_sensitive(self):
        assert not matches_ignore("dropbox", {"Dropbox"})


class TestSnapshotBuilder:
    """Tests for SnapshotBuilder.build and scan."""

    def test_nothing_listening(self, make_builder):
        """Test an idle watch set yields an empty snapshot."""
        builder = make_builder(FakeProber())
        assert dict(builder.build([3000, 8080])) == {}

    def test_build_orders_by_port(self, make_builder):
        """Test results are ordered by port regardless of watch order."""
        prober = FakeProber({8080: [(2, "python")], 3000: [(1, "node")]})
        builder = make_builder(prober)

        snapshot = builder.build([8080, 3000])

        assert list(snapshot) == [3000, 8080]
        assert snapshot[3000] == ProcessInfo(pid=1, port=3000, command="node")

    def test_ignored_ports_not_probed(self, make_builder):
        """Test ignored ports never reach the prober."""
        prober = FakeProber({5353: [(9, "mDNSResponder")]})
        builder = make_builder(prober)

        snapshot = builder.build([3000, 5353], ignore_ports={5353})

        assert 5353 not in snapshot
        assert 5353 not in prober.probed

    def test_ignore_patterns_filter_after_probe(self, make_builder):
        """Test processes matching ignore patterns are dropped after probing."""
        prober = FakeProber({3000: [(1, "Dropbox")], 3001: [(2, "node")]})
        builder = make_builder(prober)

        first = builder.build([3000, 3001], ignore_patterns={"Dropbox"})
        second = builder.build([3000, 3001])

        assert list(first) == [3001]
        assert 3000 in prober.probed
        assert list(second) == [3000, 3001]

    def test_slow_probe_times_out(self, make_builder):
        """Test one unresponsive port does not stall the scan."""
        prober = FakeProber({3000: [(1, "node")], 4000: [(2, "hung")]}, slow={4000}, timeout=0.2)
        builder = make_builder(prober)

        start = time.monotonic()
        result = builder.scan([3000, 4000])
        elapsed = time.monotonic() - start

        assert elapsed < 1.0
        assert list(result.snapshot) == [3000]
        assert result.failed_ports == frozenset({4000})

    def test_failing_probe_isolated(self, make_builder):
        """Test an exception in one probe leaves the other ports intact."""
        prober = FakeProber({3000: [(1, "node")]}, broken={4000})
        builder = make_builder(prober)

        result = builder.scan([3000, 4000])

        assert list(result.snapshot) == [3000]
        assert result.failed_ports == frozenset({4000})

    def test_cancel_aborts_scan(self, make_builder):
        """Test a set cancel event abandons the scan promptly."""
        prober = FakeProber(slow={3000}, timeout=5.0)
        builder = make_builder(prober)
        cancel = threading.Event()
        threading.Timer(0.1, cancel.set).start()

        start = time.monotonic()
        with pytest.raises(ScanCancelled):
            builder.scan([3000], cancel=cancel)
        assert time.monotonic() - start < 1.0

    def test_large_watch_set_with_slow_probes(self, make_builder):
        """
        Test every port is probed when the watch set outnumbers the workers.

        Each probe is slow but within its own bound, so no port may be
        reported as failed and a listener on the last port must be found.
        """
        ports = default_config().effective_ports()
        prober = FakeProber({8010: [(77, "uvicorn")]}, timeout=1.0, latency=0.3)
        builder = make_builder(prober)

        result = builder.scan(ports)

        assert len(ports) > 8
        assert result.failed_ports == frozenset()
        assert 8010 in result.snapshot
        assert result.snapshot[8010].pid == 77
        assert sorted(prober.probed) == sorted(ports)

    def test_hung_workers_do_not_hold_queued_ports(self, make_builder):
        """Test ports stuck behind a hung probe fail once the batch bound passes."""
        prober = FakeProber({3001: [(2, "node")]}, slow={3000}, timeout=0.2)
        builder = make_builder(prober, max_workers=1)

        start = time.monotonic()
        result = builder.scan([3000, 3001])
        elapsed = time.monotonic() - start

        assert elapsed < 1.5
        assert result.failed_ports == frozenset({3000, 3001})
        assert dict(result.snapshot) == {}

    def test_cycle_hooks_wrap_each_scan(self, make_builder):
        """Test the prober is told when a batch of probes starts and ends."""
        prober = FakeProber({3000: [(1, "node")]})
        builder = make_builder(prober)

        builder.scan([3000, 3001])
        builder.scan([3000])

        assert prober.cycles == ["begin", "end", "begin", "end"]
