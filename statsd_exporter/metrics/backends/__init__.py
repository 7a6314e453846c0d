"""
Metrics backends package.

This package contains the wire clients used to ship metrics.
"""

# Import backends for easy access
from statsd_exporter.metrics.backends.statsd import (
    StatLine,
    StatsClient,
    StatsdClient,
    format_float,
    open_client,
    parse_line,
)
