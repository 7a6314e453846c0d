"""
Metrics registry contract and in-memory implementation.

The exporter reads metrics through the ``Registry`` contract: a finite,
restartable iterable of ``(name, metric)`` pairs. Every metric carries a
``kind`` drawn from the closed ``MetricKind`` set, which the exporter matches
exhaustively.

``MetricsRegistry`` and the ``Standard*`` metrics are a small thread-safe
implementation of that contract for counters and gauges. Timers are provided
by the host application; only their snapshot shape is defined here.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)

from statsd_exporter.metrics.errors import DuplicateMetricError, UnsupportedMetricError


class MetricKind(Enum):
    """Closed set of metric variants understood by the exporter."""
    COUNTER = "counter"
    GAUGE = "gauge"
    GAUGE_FLOAT64 = "gauge_float64"
    TIMER = "timer"


class Counter(Protocol):
    """Monotonic integer count."""
    kind: MetricKind

    def count(self) -> int: ...


class Gauge(Protocol):
    """Current int64 value."""
    kind: MetricKind

    def value(self) -> int: ...


class GaugeFloat64(Protocol):
    """Current float64 value."""
    kind: MetricKind

    def value(self) -> float: ...


class TimerSnapshot(Protocol):
    """Read-only statistical summary of a timer at one point in time.

    Durations (min, max, mean, std_dev, percentiles) are in nanoseconds;
    rates are events per second.
    """

    def count(self) -> int: ...

    def min(self) -> int: ...

    def max(self) -> int: ...

    def mean(self) -> float: ...

    def std_dev(self) -> float: ...

    def percentiles(self, ps: Sequence[float]) -> List[float]: ...

    def rate1(self) -> float: ...

    def rate5(self) -> float: ...

    def rate15(self) -> float: ...

    def rate_mean(self) -> float: ...


class Timer(Protocol):
    """Duration distribution plus throughput rates."""
    kind: MetricKind

    def snapshot(self) -> TimerSnapshot: ...


Metric = Union[Counter, Gauge, GaugeFloat64, Timer]


class Registry(Protocol):
    """Anything that yields ``(name, metric)`` pairs, once per iteration."""

    def __iter__(self) -> Iterator[Tuple[str, Metric]]: ...


class StandardCounter:
    """Thread-safe integer counter."""

    kind = MetricKind.COUNTER

    def __init__(self) -> None:
        self._count = 0
        self._lock = threading.Lock()

    def inc(self, amount: int = 1) -> None:
        """
        Add to the counter.

        Args:
            amount: Increment (default 1)
        """
        with self._lock:
            self._count += amount

    def dec(self, amount: int = 1) -> None:
        """
        Subtract from the counter.

        Args:
            amount: Decrement (default 1)
        """
        with self._lock:
            self._count -= amount

    def clear(self) -> None:
        """Reset the counter to zero."""
        with self._lock:
            self._count = 0

    def count(self) -> int:
        """
        Returns:
            Current count
        """
        with self._lock:
            return self._count


class StandardGauge:
    """Thread-safe integer gauge."""

    kind = MetricKind.GAUGE

    def __init__(self, value: int = 0) -> None:
        self._value = int(value)
        self._lock = threading.Lock()

    def update(self, value: int) -> None:
        """
        Replace the gauge value.

        Args:
            value: New value, truncated to int
        """
        with self._lock:
            self._value = int(value)

    def value(self) -> int:
        """
        Returns:
            Current value
        """
        with self._lock:
            return self._value


class StandardGaugeFloat64:
    """Thread-safe float gauge."""

    kind = MetricKind.GAUGE_FLOAT64

    def __init__(self, value: float = 0.0) -> None:
        self._value = float(value)
        self._lock = threading.Lock()

    def update(self, value: float) -> None:
        """
        Replace the gauge value.

        Args:
            value: New value
        """
        with self._lock:
            self._value = float(value)

    def value(self) -> float:
        """
        Returns:
            Current value
        """
        with self._lock:
            return self._value


@dataclass(frozen=True)
class StaticTimerSnapshot:
    """
    Timer snapshot built from precomputed statistics.

    Useful when the distribution is summarised elsewhere. Quantiles missing
    from ``quantiles`` report 0.0.
    """
    count_: int = 0
    min_: int = 0
    max_: int = 0
    mean_: float = 0.0
    std_dev_: float = 0.0
    quantiles: Mapping[float, float] = field(default_factory=dict)
    rate1_: float = 0.0
    rate5_: float = 0.0
    rate15_: float = 0.0
    rate_mean_: float = 0.0

    def count(self) -> int:
        return self.count_

    def min(self) -> int:
        return self.min_

    def max(self) -> int:
        return self.max_

    def mean(self) -> float:
        return self.mean_

    def std_dev(self) -> float:
        return self.std_dev_

    def percentiles(self, ps: Sequence[float]) -> List[float]:
        return [float(self.quantiles.get(p, 0.0)) for p in ps]

    def rate1(self) -> float:
        return self.rate1_

    def rate5(self) -> float:
        return self.rate5_

    def rate15(self) -> float:
        return self.rate15_

    def rate_mean(self) -> float:
        return self.rate_mean_


class MetricsRegistry:
    """
    Thread-safe name to metric map.

    Iteration yields a copy of the entries taken under the lock, so metrics
    may be registered or removed while an export cycle walks the registry.
    """

    def __init__(self) -> None:
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.Lock()

    def register(self, name: str, metric: Metric) -> None:
        """
        Register a metric under ``name``.

        Raises:
            UnsupportedMetricError: If the metric has no MetricKind
            DuplicateMetricError: If the name is already taken
        """
        if not isinstance(getattr(metric, "kind", None), MetricKind):
            raise UnsupportedMetricError(
                f"{type(metric).__name__} does not declare a MetricKind"
            )

        with self._lock:
            if name in self._metrics:
                raise DuplicateMetricError(f"metric {name!r} is already registered")
            self._metrics[name] = metric

    def get_or_register(self, name: str, factory: Callable[[], Metric]) -> Metric:
        """Return the metric named ``name``, creating it with ``factory`` if absent."""
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = factory()
                self._metrics[name] = metric
            return metric

    def get(self, name: str) -> Optional[Metric]:
        """Return the metric named ``name``, or None."""
        with self._lock:
            return self._metrics.get(name)

    def unregister(self, name: str) -> bool:
        """
        Remove the metric named ``name``.

        Returns:
            True if a metric was removed
        """
        with self._lock:
            return self._metrics.pop(name, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._metrics)

    def __iter__(self) -> Iterator[Tuple[str, Metric]]:
        with self._lock:
            entries = list(self._metrics.items())
        return iter(entries)
