"""
Pytest configuration and fixtures.
"""

import socket

import pytest

from statsd_exporter.metrics.backends.statsd import StatsdClient
from statsd_exporter.tests.fakes import FakeSocket


@pytest.fixture
def fake_socket():
    """Create a recording socket."""
    return FakeSocket()


@pytest.fixture
def client(fake_socket):
    """Create a client with the default 512 byte buffer."""
    return StatsdClient(fake_socket)


@pytest.fixture
def udp_server():
    """Bind a loopback UDP socket that plays the StatsD server."""
    server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    server.bind(("127.0.0.1", 0))
    server.settimeout(1.0)
    yield server
    server.close()
