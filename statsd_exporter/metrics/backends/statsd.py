"""
StatsD wire client.

This module provides a buffered UDP client for the StatsD line protocol.
Stat lines are accumulated in a fixed-size buffer and written as
multi-metric packets (newline-joined lines, never split across datagrams),
so a whole export cycle usually costs a handful of syscalls.
"""

import math
import random
import socket
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol, Tuple

from loguru import logger

from statsd_exporter.core.config import DEFAULT_BUFFER_SIZE
from statsd_exporter.metrics.errors import (
    StatsdClientClosedError,
    StatsdTransportError,
    StatsdWriteError,
)

COUNTER_TYPE = "c"
GAUGE_TYPE = "g"


def format_float(value: float) -> str:
    """
    Render a float with the fewest digits that round-trip, without exponent.

    Args:
        value: Value to render

    Returns:
        Positional decimal string, e.g. ``20.5``, ``100``, ``0.0000001``
    """
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    # repr() is the shortest round-trip form; normalize() drops trailing zeros
    return format(Decimal(repr(value)).normalize(), "f")


@dataclass(frozen=True)
class StatLine:
    """A single ``key:value|type[|@rate]`` protocol unit."""
    key: str
    value: str
    type: str
    sample_rate: float = 1.0

    def render(self) -> str:
        line = f"{self.key}:{self.value}|{self.type}"
        if self.sample_rate < 1:
            line += f"|@{format_float(self.sample_rate)}"
        return line


def parse_line(line: str) -> StatLine:
    """
    Parse one StatsD line.

    Args:
        line: Line without trailing newline

    Returns:
        Parsed StatLine

    Raises:
        ValueError: If the line is not ``key:value|type[|@rate]``
    """
    head, _, meta = line.partition("|")
    key, sep, value = head.rpartition(":")
    if not sep or not key or not meta:
        raise ValueError(f"Invalid StatsD line: {line!r}")

    parts = meta.split("|")
    metric_type = parts[0]
    sample_rate = 1.0
    for part in parts[1:]:
        if part.startswith("@"):
            sample_rate = float(part[1:])

    # Reject values that are not numeric
    float(value)

    return StatLine(key=key, value=value, type=metric_type, sample_rate=sample_rate)


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split a ``host:port`` address. IPv6 hosts may be bracketed.

    Raises:
        StatsdTransportError: If the address is malformed
    """
    host, sep, port = address.rpartition(":")
    if not sep:
        raise StatsdTransportError(f"Missing port in StatsD address {address!r}")

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    try:
        port_number = int(port)
    except ValueError:
        raise StatsdTransportError(f"Invalid port in StatsD address {address!r}") from None

    if not 0 < port_number < 65536:
        raise StatsdTransportError(f"Port out of range in StatsD address {address!r}")

    return host or "localhost", port_number


class StatsClient(Protocol):
    """Operations the exporter needs from a StatsD client."""

    def increment(self, key: str, count: int, sample_rate: float = 1.0) -> None: ...

    def gauge_int(self, key: str, value: int, sample_rate: float = 1.0) -> None: ...

    def gauge_float(self, key: str, value: float, sample_rate: float = 1.0) -> None: ...

    def flush(self) -> None: ...

    def close(self) -> None: ...


class StatsdClient:
    """
    Buffered StatsD client over a connected UDP socket.

    All buffer mutation and transmission happens under one lock, so a
    client may be shared between threads. Usable as a context manager;
    leaving the block closes the client (final flush included).
    """

    def __init__(
        self,
        sock: socket.socket,
        buffer_size: int = 0,
        prefix: str = "",
        rng: Optional[random.Random] = None
    ) -> None:
        """
        Initialize the client.

        Args:
            sock: Connected datagram socket; owned by the client from now on
            buffer_size: Packet buffer capacity in bytes (<= 0 selects 512)
            prefix: Prepended verbatim to every key
            rng: Random source for sampling decisions
        """
        if buffer_size <= 0:
            buffer_size = DEFAULT_BUFFER_SIZE

        self.buffer_size = buffer_size
        self.prefix = prefix
        self._sock = sock
        self._rng = rng or random.Random()
        self._buffer = bytearray()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def buffered(self) -> int:
        """Number of bytes waiting in the buffer."""
        return len(self._buffer)

    @property
    def available(self) -> int:
        """Free buffer capacity in bytes."""
        return self.buffer_size - len(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    def increment(self, key: str, count: int, sample_rate: float = 1.0) -> None:
        """Increment the counter for the given bucket."""
        self._send(StatLine(key, str(int(count)), COUNTER_TYPE, sample_rate))

    def gauge_int(self, key: str, value: int, sample_rate: float = 1.0) -> None:
        """Record an integer value for the given bucket."""
        self._send(StatLine(key, str(int(value)), GAUGE_TYPE, sample_rate))

    def gauge_float(self, key: str, value: float, sample_rate: float = 1.0) -> None:
        """Record a float value for the given bucket."""
        self._send(StatLine(key, format_float(value), GAUGE_TYPE, sample_rate))

    def flush(self) -> None:
        """
        Write any buffered lines to the network as one datagram.

        Raises:
            StatsdWriteError: If the datagram could not be sent
        """
        self._ensure_open()
        with self._lock:
            self._flush_locked()

    def close(self) -> None:
        """
        Flush remaining lines and release the socket.

        The socket is released even when the final flush fails; the flush
        error is raised afterwards. Closing twice is a no-op.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._flush_locked()
            finally:
                self._sock.close()

    def __enter__(self) -> "StatsdClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _ensure_open(self) -> None:
        """
        Raises:
            StatsdClientClosedError: If ``close()`` has been called
        """
        if self._closed:
            raise StatsdClientClosedError("StatsD client is closed")

    def _should_send(self, sample_rate: float) -> bool:
        """
        Make the sampling decision for one line.

        Args:
            sample_rate: Probability of sending; values >= 1 always send

        Returns:
            True if the line should be sent
        """
        if sample_rate >= 1:
            return True
        return self._rng.random() < sample_rate

    def _send(self, stat: StatLine) -> None:
        """
        Sample, prefix and buffer one stat line, flushing first if it does
        not fit next to the pending content.

        Args:
            stat: Line to send

        Raises:
            StatsdClientClosedError: If the client is closed
            StatsdWriteError: If a line larger than the buffer fails to send
        """
        self._ensure_open()

        if not self._should_send(stat.sample_rate):
            return

        line = (self.prefix + stat.render()).encode("utf-8")

        with self._lock:
            separator = 1 if self._buffer else 0

            # Start a new packet if this line does not fit
            if self.available < len(line) + separator:
                try:
                    self._flush_locked()
                except StatsdWriteError as e:
                    logger.warning(
                        "Dropped StatsD packet while making room for a new line",
                        error=str(e)
                    )

            # Lines larger than a whole packet go out on their own
            if len(line) > self.buffer_size:
                self._write(line)
                return

            if self._buffer:
                self._buffer += b"\n"
            self._buffer += line

    def _flush_locked(self) -> None:
        """
        Write the buffer as one datagram. Caller holds ``_lock``.

        The buffer is emptied before writing, so a failed packet is dropped.

        Raises:
            StatsdWriteError: If the datagram could not be sent
        """
        if not self._buffer:
            return

        packet = bytes(self._buffer)
        self._buffer.clear()
        self._write(packet)

    def _write(self, packet: bytes) -> None:
        """
        Args:
            packet: Complete datagram payload

        Raises:
            StatsdWriteError: Wrapping the socket's OSError
        """
        try:
            self._sock.send(packet)
        except OSError as e:
            raise StatsdWriteError(
                f"Failed to send {len(packet)} byte StatsD packet: {e}"
            ) from e


def open_client(
    address: str,
    buffer_size: int = 0,
    timeout: Optional[float] = None,
    prefix: str = "",
    rng: Optional[random.Random] = None
) -> StatsdClient:
    """
    Connect a UDP socket to ``address`` and wrap it in a StatsdClient.

    Args:
        address: StatsD server as ``host:port``
        buffer_size: Packet size; see the multi-metric packet guidelines
            of the StatsD project (<= 0 selects 512)
        timeout: Optional socket timeout in seconds for blocking operations
        prefix: Prepended verbatim to every key
        rng: Random source for sampling decisions

    Returns:
        Connected StatsdClient

    Raises:
        StatsdTransportError: If the address cannot be resolved or connected
    """
    host, port = parse_address(address)

    try:
        family, socktype, proto, _, sockaddr = socket.getaddrinfo(
            host, port, 0, socket.SOCK_DGRAM
        )[0]
    except OSError as e:
        raise StatsdTransportError(f"Cannot resolve StatsD address {address!r}: {e}") from e

    sock = None
    try:
        sock = socket.socket(family, socktype, proto)
        if timeout is not None:
            sock.settimeout(timeout)
        sock.connect(sockaddr)
    except OSError as e:
        if sock is not None:
            sock.close()
        raise StatsdTransportError(f"Cannot connect to StatsD at {address!r}: {e}") from e

    client = StatsdClient(sock, buffer_size=buffer_size, prefix=prefix, rng=rng)
    logger.debug(
        "StatsD client connected",
        address=address,
        buffer_size=client.buffer_size
    )
    return client
