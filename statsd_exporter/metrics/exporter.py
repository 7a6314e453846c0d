"""
Periodic StatsD exporter.

This module drains a metrics registry on a fixed schedule and writes every
metric to StatsD through a freshly opened buffered client. One export cycle
runs at a time: the tick wait and the cycle body share one thread, so a slow
cycle delays the next tick instead of overlapping with it.
"""

import threading
import time
from typing import Callable, Optional

from loguru import logger

from statsd_exporter.core.config import StatsdConfig
from statsd_exporter.metrics.backends.statsd import StatsClient, open_client
from statsd_exporter.metrics.errors import (
    StatsdError,
    StatsdWriteError,
    UnsupportedMetricError,
)
from statsd_exporter.metrics.registry import Metric, MetricKind, Registry

# Quantiles reported for every timer, with their key suffixes
PERCENTILES = (0.5, 0.75, 0.95, 0.99, 0.999)
PERCENTILE_SUFFIXES = (
    "50-percentile",
    "75-percentile",
    "95-percentile",
    "99-percentile",
    "999-percentile",
)

# (address, buffer_size) -> client
ClientFactory = Callable[[str, int], StatsClient]


class StatsdExporter:
    """
    Exports a registry to StatsD every ``config.flush_interval`` seconds.

    Example:
        exporter = StatsdExporter(StatsdConfig.from_settings(registry))
        exporter.start()
        ...
        exporter.stop()
    """

    def __init__(
        self,
        config: StatsdConfig,
        client_factory: Optional[ClientFactory] = None
    ) -> None:
        """
        Initialize the exporter.

        Args:
            config: Exporter configuration
            client_factory: Opens a client per cycle (defaults to open_client)
        """
        self.config = config
        self._client_factory = client_factory or open_client
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def export_once(self) -> int:
        """
        Run one export cycle: open a client, write every metric, close it.

        An entry that fails to export (unsupported kind, or an accessor that
        raises) is logged and skipped; the remaining entries still go out.

        Returns:
            Number of registry entries exported

        Raises:
            StatsdTransportError: If the client could not be opened
            StatsdWriteError: If the final flush failed
        """
        client = self._client_factory(self.config.address, self.config.buffer_size)
        exported = 0

        try:
            for name, metric in self.config.registry:
                try:
                    self._export_metric(client, name, metric)
                    exported += 1
                except UnsupportedMetricError as e:
                    logger.error(
                        "Skipping metric with unsupported type",
                        metric=name,
                        error=str(e)
                    )
                except Exception as e:
                    logger.error(
                        "Failed to export metric",
                        metric=name,
                        error_type=e.__class__.__name__,
                        error=str(e)
                    )
        finally:
            client.close()

        return exported

    def run(self) -> None:
        """
        Export on a fixed schedule until ``stop()`` is called.

        Ticks are anchored to the start time. Ticks missed while a cycle
        overran are dropped, not queued.
        """
        interval = self.config.flush_interval

        logger.info(
            "StatsD exporter started",
            address=self.config.address,
            flush_interval=interval,
            prefix=self.config.prefix
        )

        next_tick = time.monotonic() + interval
        while not self._stop_event.wait(max(0.0, next_tick - time.monotonic())):
            self._run_cycle()

            next_tick += interval
            now = time.monotonic()
            if next_tick <= now:
                missed = int((now - next_tick) // interval) + 1
                next_tick += missed * interval
                logger.warning(
                    "StatsD export cycle overran the flush interval",
                    missed_ticks=missed,
                    flush_interval=interval
                )

        logger.info("StatsD exporter stopped")

    def start(self) -> bool:
        """
        Start exporting on a background daemon thread.

        A thread left over from a ``stop()`` that timed out is still
        finishing its cycle and will exit; no new thread is started until
        it has gone.

        Returns:
            True if the thread is running, False if a stopping thread is
            still alive
        """
        with self._thread_lock:
            if self.running and self._stop_event.is_set():
                logger.warning("StatsD exporter thread is still stopping; not restarted")
                return False

            if self.running:
                logger.debug("StatsD exporter thread already running")
                return True

            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self.run,
                name="statsd-exporter",
                daemon=True
            )
            self._thread.start()
            return True

    def stop(self, timeout: float = 5.0) -> bool:
        """
        Stop the background thread. An in-flight cycle is allowed to finish.

        Args:
            timeout: Seconds to wait for the thread to exit

        Returns:
            True if the thread has stopped
        """
        self._stop_event.set()

        with self._thread_lock:
            if self._thread is None:
                return True

            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("StatsD exporter thread did not stop gracefully")
                return False

            self._thread = None
            return True

    def _run_cycle(self) -> None:
        """
        Run one export cycle and log its outcome.

        Errors never escape, so a failed cycle does not end the loop.
        """
        start_time = time.monotonic()
        try:
            exported = self.export_once()
        except StatsdError as e:
            logger.error(
                "StatsD export cycle failed",
                address=self.config.address,
                error=str(e)
            )
        except Exception as e:
            logger.error(
                "Unexpected error in StatsD export cycle",
                error_type=e.__class__.__name__,
                error=str(e)
            )
        else:
            logger.debug(
                "StatsD export cycle complete",
                metrics=exported,
                duration_ms=(time.monotonic() - start_time) * 1000.0
            )

    def _export_metric(self, client: StatsClient, name: str, metric: Metric) -> None:
        """
        Write the stat lines for one registry entry.

        Args:
            client: Client for the current cycle
            name: Registry name of the metric
            metric: Metric to export; dispatched on its ``kind``

        Raises:
            UnsupportedMetricError: If the metric has no known MetricKind
        """
        base = f"{self.config.prefix}.{name}"
        kind = getattr(metric, "kind", None)

        if kind is MetricKind.COUNTER:
            self._emit(client.increment, f"{base}.count", metric.count())
        elif kind is MetricKind.GAUGE:
            self._emit(client.gauge_int, f"{base}.value", metric.value())
        elif kind is MetricKind.GAUGE_FLOAT64:
            self._emit(client.gauge_float, f"{base}.value", metric.value())
        elif kind is MetricKind.TIMER:
            self._export_timer(client, base, metric)
        else:
            raise UnsupportedMetricError(
                f"{type(metric).__name__} has no supported MetricKind"
            )

    def _export_timer(self, client: StatsClient, base: str, metric: Metric) -> None:
        """
        Write the fourteen lines derived from one timer snapshot.

        Durations (min, max, mean, std-dev, percentiles) are multiplied by
        ``config.duration_unit``; rates are written as-is.

        Args:
            client: Client for the current cycle
            base: Key prefix, ``<prefix>.<name>``
            metric: Timer to snapshot
        """
        unit = self.config.duration_unit
        snapshot = metric.snapshot()
        percentiles = snapshot.percentiles(PERCENTILES)

        self._emit(client.gauge_int, f"{base}.count", snapshot.count())
        self._emit(client.gauge_int, f"{base}.min", int(unit) * int(snapshot.min()))
        self._emit(client.gauge_int, f"{base}.max", int(unit) * int(snapshot.max()))
        self._emit(client.gauge_float, f"{base}.mean", unit * snapshot.mean())
        self._emit(client.gauge_float, f"{base}.std-dev", unit * snapshot.std_dev())
        for suffix, value in zip(PERCENTILE_SUFFIXES, percentiles):
            self._emit(client.gauge_float, f"{base}.{suffix}", unit * value)
        self._emit(client.gauge_float, f"{base}.one-minute", snapshot.rate1())
        self._emit(client.gauge_float, f"{base}.five-minute", snapshot.rate5())
        self._emit(client.gauge_float, f"{base}.fifteen-minute", snapshot.rate15())
        self._emit(client.gauge_float, f"{base}.mean-rate", snapshot.rate_mean())

    def _emit(self, send: Callable[[str, float, float], None], key: str, value) -> None:
        """
        Send one line, logging a write failure instead of raising it.

        Args:
            send: Bound client method (increment, gauge_int or gauge_float)
            key: Full stat key
            value: Value to record
        """
        # The sampling rate is the flush interval in seconds for every line
        try:
            send(key, value, self.config.flush_interval)
        except StatsdWriteError as e:
            logger.warning("Failed to write StatsD line", key=key, error=str(e))


def run(config: StatsdConfig, client_factory: Optional[ClientFactory] = None) -> None:
    """Blocking exporter: report ``config.registry`` to StatsD forever."""
    StatsdExporter(config, client_factory).run()


def statsd(registry: Registry, flush_interval: float, prefix: str, address: str) -> None:
    """
    Blocking exporter with default options.

    Reports metrics in ``registry`` to the StatsD server at ``address``
    every ``flush_interval`` seconds, prepending ``prefix`` to metric names.
    Timer durations are reported in nanoseconds.
    """
    run(StatsdConfig(
        address=address,
        registry=registry,
        flush_interval=flush_interval,
        duration_unit=1.0,
        prefix=prefix,
    ))
