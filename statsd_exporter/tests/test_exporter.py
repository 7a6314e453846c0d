"""
Tests for the periodic StatsD exporter.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from statsd_exporter.core.config import Settings, StatsdConfig
from statsd_exporter.metrics.backends.statsd import StatsdClient
from statsd_exporter.metrics.errors import StatsdTransportError, StatsdWriteError
from statsd_exporter.metrics.exporter import StatsdExporter
from statsd_exporter.metrics.registry import (
    MetricKind,
    MetricsRegistry,
    StandardCounter,
    StandardGauge,
    StandardGaugeFloat64,
    StaticTimerSnapshot,
)
from statsd_exporter.tests.fakes import FakeSocket, FixedRandom


class FakeTimer:
    """Timer returning a fixed snapshot."""

    kind = MetricKind.TIMER

    def __init__(self, snapshot):
        self._snapshot = snapshot

    def snapshot(self):
        return self._snapshot


LATENCY_SNAPSHOT = StaticTimerSnapshot(
    count_=10,
    min_=5,
    max_=100,
    mean_=20.5,
    std_dev_=3.2,
    quantiles={0.5: 50.0, 0.75: 60.0, 0.95: 70.0, 0.99: 80.0, 0.999: 90.0},
    rate1_=1.0,
    rate5_=2.0,
    rate15_=3.0,
    rate_mean_=4.0,
)


def socket_factory(sock, rng=None):
    """Client factory writing into ``sock``."""
    def factory(address, buffer_size):
        return StatsdClient(sock, buffer_size=buffer_size, rng=rng)
    return factory


def make_exporter(registry, sock, flush_interval=1.0, duration_unit=1.0, rng=None):
    """Exporter with prefix ``app`` writing into ``sock``."""
    config = StatsdConfig(
        address="127.0.0.1:8125",
        registry=registry,
        flush_interval=flush_interval,
        duration_unit=duration_unit,
        prefix="app",
    )
    return StatsdExporter(config, client_factory=socket_factory(sock, rng))


def test_timer_encoding(fake_socket):
    """A timer expands to fourteen gauge lines in a fixed order."""
    registry = MetricsRegistry()
    registry.register("latency", FakeTimer(LATENCY_SNAPSHOT))

    exported = make_exporter(registry, fake_socket).export_once()

    assert exported == 1
    assert fake_socket.sent == ["\n".join([
        "app.latency.count:10|g",
        "app.latency.min:5|g",
        "app.latency.max:100|g",
        "app.latency.mean:20.5|g",
        "app.latency.std-dev:3.2|g",
        "app.latency.50-percentile:50|g",
        "app.latency.75-percentile:60|g",
        "app.latency.95-percentile:70|g",
        "app.latency.99-percentile:80|g",
        "app.latency.999-percentile:90|g",
        "app.latency.one-minute:1|g",
        "app.latency.five-minute:2|g",
        "app.latency.fifteen-minute:3|g",
        "app.latency.mean-rate:4|g",
    ]).encode()]
    assert fake_socket.closed is True


def test_timer_durations_are_scaled(fake_socket):
    """Durations are multiplied by the duration unit; counts and rates are not."""
    registry = MetricsRegistry()
    registry.register("latency", FakeTimer(LATENCY_SNAPSHOT))

    make_exporter(registry, fake_socket, duration_unit=1000.0).export_once()

    lines = fake_socket.lines()
    assert "app.latency.count:10|g" in lines
    assert "app.latency.min:5000|g" in lines
    assert "app.latency.max:100000|g" in lines
    assert "app.latency.mean:20500|g" in lines
    assert "app.latency.50-percentile:50000|g" in lines
    # Rates are not durations
    assert "app.latency.one-minute:1|g" in lines


def test_counter_and_gauges(fake_socket):
    """Counters emit ``.count`` and gauges emit ``.value`` in registry order."""
    registry = MetricsRegistry()
    requests = StandardCounter()
    requests.inc(3)
    registry.register("requests", requests)
    registry.register("queue", StandardGauge(7))
    registry.register("load", StandardGaugeFloat64(0.25))

    exported = make_exporter(registry, fake_socket).export_once()

    assert exported == 3
    assert fake_socket.lines() == [
        "app.requests.count:3|c",
        "app.queue.value:7|g",
        "app.load.value:0.25|g",
    ]


def test_empty_registry_sends_nothing(fake_socket):
    """An empty registry still opens and closes a client but sends nothing."""
    exported = make_exporter(MetricsRegistry(), fake_socket).export_once()

    assert exported == 0
    assert fake_socket.sent == []
    assert fake_socket.closed is True


def test_many_metrics_span_several_packets(fake_socket):
    """A large registry is split into packets no larger than the buffer."""
    registry = MetricsRegistry()
    for i in range(100):
        registry.register(f"gauge{i:03d}", StandardGauge(i))

    make_exporter(registry, fake_socket).export_once()

    assert len(fake_socket.sent) > 1
    assert all(len(packet) <= 512 for packet in fake_socket.sent)
    assert len(fake_socket.lines()) == 100


def test_sub_second_interval_annotates_counter_lines(fake_socket):
    """Below one second the flush interval doubles as a sampling rate."""
    registry = MetricsRegistry()
    registry.get_or_register("requests", StandardCounter).inc(3)

    exporter = make_exporter(
        registry, fake_socket, flush_interval=0.5, rng=FixedRandom(0.0)
    )
    exporter.export_once()

    assert fake_socket.lines() == ["app.requests.count:3|c|@0.5"]


def test_sub_second_interval_can_suppress_lines(fake_socket):
    """A draw above a sub-second interval drops the line."""
    registry = MetricsRegistry()
    registry.get_or_register("requests", StandardCounter).inc(3)

    exporter = make_exporter(
        registry, fake_socket, flush_interval=0.5, rng=FixedRandom(0.9)
    )
    exporter.export_once()

    assert fake_socket.sent == []


def test_interval_of_one_second_or_more_is_never_sampled(fake_socket):
    """Intervals of a second or more send every line unannotated."""
    registry = MetricsRegistry()
    registry.get_or_register("requests", StandardCounter).inc(3)

    exporter = make_exporter(
        registry, fake_socket, flush_interval=10.0, rng=FixedRandom(0.999)
    )
    exporter.export_once()

    assert fake_socket.lines() == ["app.requests.count:3|c"]


def test_unsupported_metric_is_skipped(fake_socket):
    """An entry without a MetricKind is skipped; plain iterables work as registries."""
    registry = [
        ("mystery", object()),
        ("queue", StandardGauge(1)),
    ]

    exported = make_exporter(registry, fake_socket).export_once()

    assert exported == 1
    assert fake_socket.lines() == ["app.queue.value:1|g"]


def test_failing_metric_does_not_abort_cycle(fake_socket):
    """An accessor that raises skips only its own entry."""
    broken = MagicMock(kind=MetricKind.GAUGE)
    broken.value.side_effect = ValueError("sensor unavailable")
    registry = [
        ("before", StandardGauge(1)),
        ("broken", broken),
        ("after", StandardGauge(2)),
    ]

    exported = make_exporter(registry, fake_socket).export_once()

    assert exported == 2
    assert fake_socket.lines() == ["app.before.value:1|g", "app.after.value:2|g"]
    assert fake_socket.closed is True
    broken.value.assert_called_once_with()


def test_failing_timer_snapshot_does_not_abort_cycle(fake_socket):
    """A timer whose snapshot raises is skipped like any other entry."""
    broken = MagicMock(kind=MetricKind.TIMER)
    broken.snapshot.side_effect = RuntimeError("reservoir corrupted")
    registry = [("latency", broken), ("queue", StandardGauge(3))]

    exported = make_exporter(registry, fake_socket).export_once()

    assert exported == 1
    assert fake_socket.lines() == ["app.queue.value:3|g"]


def test_client_receives_flush_interval_as_rate():
    """Every line is sent with the flush interval as its sample rate."""
    client = MagicMock(spec=StatsdClient)
    registry = MetricsRegistry()
    registry.get_or_register("requests", StandardCounter).inc(3)
    registry.register("load", StandardGaugeFloat64(0.5))
    config = StatsdConfig(
        address="127.0.0.1:8125",
        registry=registry,
        flush_interval=0.25,
        prefix="app",
        buffer_size=1432,
    )
    factory = MagicMock(return_value=client)

    StatsdExporter(config, client_factory=factory).export_once()

    factory.assert_called_once_with("127.0.0.1:8125", 1432)
    client.increment.assert_called_once_with("app.requests.count", 3, 0.25)
    client.gauge_float.assert_called_once_with("app.load.value", 0.5, 0.25)
    client.close.assert_called_once_with()


def test_millisecond_setting_multiplies_nanosecond_durations(fake_socket):
    """Unit "ms" multiplies nanosecond durations by 1e6 rather than converting them."""
    registry = MetricsRegistry()
    registry.register("latency", FakeTimer(LATENCY_SNAPSHOT))
    source = Settings(statsd_duration_unit="ms", statsd_prefix="app")
    config = StatsdConfig.from_settings(registry, source)

    StatsdExporter(config, client_factory=socket_factory(fake_socket)).export_once()

    lines = fake_socket.lines()
    assert "app.latency.min:5000000|g" in lines
    assert "app.latency.max:100000000|g" in lines
    assert "app.latency.mean:20500000|g" in lines


def test_open_failure_aborts_cycle():
    """A client that cannot be opened fails the whole cycle."""
    def failing_factory(address, buffer_size):
        raise StatsdTransportError("cannot resolve")

    config = StatsdConfig(address="bad:1", registry=MetricsRegistry(), flush_interval=1.0)
    exporter = StatsdExporter(config, client_factory=failing_factory)

    with pytest.raises(StatsdTransportError):
        exporter.export_once()


def test_final_flush_failure_is_raised():
    """A failed final flush fails the cycle after the socket is released."""
    sock = FakeSocket(fail_with=OSError("network unreachable"))
    registry = MetricsRegistry()
    registry.register("queue", StandardGauge(1))

    with pytest.raises(StatsdWriteError):
        make_exporter(registry, sock).export_once()

    assert sock.closed is True


def test_loop_survives_failing_cycles():
    """The background loop keeps ticking when every cycle fails."""
    calls = []

    def failing_factory(address, buffer_size):
        calls.append(time.monotonic())
        raise StatsdTransportError("cannot resolve")

    config = StatsdConfig(address="bad:1", registry=MetricsRegistry(), flush_interval=0.01)
    exporter = StatsdExporter(config, client_factory=failing_factory)

    exporter.start()
    deadline = time.monotonic() + 2.0
    while len(calls) < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    stopped = exporter.stop()

    assert len(calls) >= 3
    assert stopped is True
    assert exporter.running is False


def test_cycles_never_overlap():
    """A cycle that outlasts the interval delays the next one."""
    active = 0
    max_active = 0
    cycles = 0
    lock = threading.Lock()

    class SlowClient:
        def __init__(self):
            nonlocal active, max_active
            with lock:
                active += 1
                max_active = max(max_active, active)

        def increment(self, key, count, sample_rate=1.0):
            pass

        def gauge_int(self, key, value, sample_rate=1.0):
            pass

        def gauge_float(self, key, value, sample_rate=1.0):
            pass

        def flush(self):
            pass

        def close(self):
            nonlocal active, cycles
            # Outlast the flush interval
            time.sleep(0.03)
            with lock:
                active -= 1
                cycles += 1

    registry = MetricsRegistry()
    registry.register("queue", StandardGauge(1))
    config = StatsdConfig(address="127.0.0.1:8125", registry=registry, flush_interval=0.01)
    exporter = StatsdExporter(config, client_factory=lambda address, size: SlowClient())

    exporter.start()
    deadline = time.monotonic() + 2.0
    while cycles < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    exporter.stop()

    assert cycles >= 3
    assert max_active == 1


def test_start_is_idempotent():
    """Starting a running exporter keeps the existing thread."""
    config = StatsdConfig(address="127.0.0.1:8125", registry=MetricsRegistry(), flush_interval=60.0)
    exporter = StatsdExporter(config, client_factory=socket_factory(FakeSocket()))

    assert exporter.start() is True
    first_thread = exporter._thread
    assert exporter.start() is True
    assert exporter._thread is first_thread

    assert exporter.stop() is True
    assert exporter.running is False


def test_start_refused_while_stopping_thread_is_alive():
    """After a timed-out stop, start waits for the old thread to exit."""
    entered = threading.Event()
    gate = threading.Event()

    def blocking_factory(address, buffer_size):
        entered.set()
        gate.wait(5.0)
        return StatsdClient(FakeSocket())

    config = StatsdConfig(address="127.0.0.1:8125", registry=MetricsRegistry(), flush_interval=0.01)
    exporter = StatsdExporter(config, client_factory=blocking_factory)

    assert exporter.start() is True
    assert entered.wait(2.0)
    old_thread = exporter._thread

    assert exporter.stop(timeout=0.05) is False
    assert exporter.start() is False
    assert exporter._thread is old_thread

    gate.set()
    assert exporter.stop() is True
    assert exporter.running is False

    assert exporter.start() is True
    assert exporter._thread is not old_thread
    assert exporter.running is True
    assert exporter.stop() is True


def test_exports_to_real_udp_server(udp_server):
    """A cycle with the default client factory reaches a loopback server."""
    port = udp_server.getsockname()[1]
    registry = MetricsRegistry()
    registry.register("queue", StandardGauge(12))
    config = StatsdConfig(
        address=f"127.0.0.1:{port}",
        registry=registry,
        flush_interval=1.0,
        prefix="svc",
    )

    StatsdExporter(config).export_once()

    data, _ = udp_server.recvfrom(4096)
    assert data == b"svc.queue.value:12|g"
