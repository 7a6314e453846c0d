"""
StatsD exporter.

Periodically drains an in-process metrics registry and reports it to a
StatsD server over UDP.
"""

__version__ = "0.1.0"
