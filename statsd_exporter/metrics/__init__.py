"""
Metrics export package.

This package provides the metrics registry contract, the buffered StatsD
client and the periodic exporter that connects the two.
"""

from statsd_exporter.core.config import StatsdConfig

# Import registry contract and in-memory implementation
from statsd_exporter.metrics.registry import (
    MetricKind,
    MetricsRegistry,
    Registry,
    StandardCounter,
    StandardGauge,
    StandardGaugeFloat64,
    StaticTimerSnapshot,
    TimerSnapshot,
)

# Import StatsD client
from statsd_exporter.metrics.backends.statsd import (
    StatsdClient,
    open_client,
)

# Import exporter
from statsd_exporter.metrics.exporter import (
    StatsdExporter,
    run,
    statsd,
)

from statsd_exporter.metrics.errors import (
    DuplicateMetricError,
    StatsdClientClosedError,
    StatsdError,
    StatsdTransportError,
    StatsdWriteError,
    UnsupportedMetricError,
)

__all__ = [
    'StatsdConfig',
    'MetricKind',
    'MetricsRegistry',
    'Registry',
    'StandardCounter',
    'StandardGauge',
    'StandardGaugeFloat64',
    'StaticTimerSnapshot',
    'TimerSnapshot',
    'StatsdClient',
    'open_client',
    'StatsdExporter',
    'run',
    'statsd',
    'DuplicateMetricError',
    'StatsdClientClosedError',
    'StatsdError',
    'StatsdTransportError',
    'StatsdWriteError',
    'UnsupportedMetricError',
]
