"""
StatsD-specific error classes.

This module defines exceptions raised by the StatsD client and exporter.
"""


class StatsdError(Exception):
    """Base class for StatsD-related errors."""
    pass


class StatsdTransportError(StatsdError):
    """Error establishing the UDP endpoint (bad address, resolution, socket)."""
    pass


class StatsdWriteError(StatsdError):
    """Error buffering or transmitting stat lines."""
    pass


class StatsdClientClosedError(StatsdError):
    """Error indicating the client has already been closed."""
    pass


class DuplicateMetricError(ValueError):
    """A metric with the same name is already registered."""
    pass


class UnsupportedMetricError(TypeError):
    """A registry entry does not carry a known ``MetricKind``."""
    pass
