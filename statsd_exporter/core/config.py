from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from statsd_exporter.metrics.registry import Registry


DEFAULT_STATSD_ADDRESS = "127.0.0.1:8125"
DEFAULT_BUFFER_SIZE = 512

# Multipliers applied to timer durations, keyed by the configured unit name.
# Timers record nanoseconds, and the exporter multiplies each duration by the
# selected factor; it does not convert to the named unit. With "ms" a 5 ns
# minimum is reported as 5000000, not 0.000005. "ns" (1.0) reports the raw
# nanosecond values.
DURATION_UNITS = {
    "ns": 1.0,
    "us": 1e3,
    "ms": 1e6,
    "s": 1e9,
}


class ConfigurationError(ValueError):
    """Raised when exporter configuration is invalid."""
    pass


class Settings(BaseSettings):
    """
    Configuration class for environment variables and exporter settings.
    """
    # Service settings
    service_name: str = "statsd_exporter"
    environment: str = "development"

    # Logging settings
    log_level: str = "INFO"
    log_level_datadog: str = "WARNING"

    # StatsD exporter settings
    statsd_address: str = DEFAULT_STATSD_ADDRESS
    statsd_flush_interval: float = 10.0  # seconds
    # Name of a DURATION_UNITS multiplier applied to nanosecond timer values:
    # "ms" multiplies by 1e6, it does not divide nanoseconds into milliseconds
    statsd_duration_unit: str = "ns"
    statsd_prefix: str = ""
    statsd_buffer_size: int = DEFAULT_BUFFER_SIZE

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("statsd_flush_interval")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("statsd_flush_interval must be greater than zero")
        return value

    @field_validator("statsd_duration_unit")
    @classmethod
    def _known_unit(cls, value: str) -> str:
        unit = value.strip().lower()
        if unit not in DURATION_UNITS:
            raise ValueError(
                f"statsd_duration_unit must be one of {sorted(DURATION_UNITS)}, got {value!r}"
            )
        return unit

    @property
    def duration_multiplier(self) -> float:
        """Factor applied to nanosecond timer durations on export."""
        return DURATION_UNITS[self.statsd_duration_unit]


@dataclass(frozen=True)
class StatsdConfig:
    """Immutable configuration for one StatsD exporter.

    Attributes:
        address: StatsD server address as ``host:port``
        registry: Registry whose metrics are exported
        flush_interval: Seconds between export cycles
        duration_unit: Multiplier applied to nanosecond timer durations
            (1.0 reports nanoseconds; 1e6 is not a conversion to ms)
        prefix: Prefix prepended to every metric name
        buffer_size: Client packet buffer size in bytes (<= 0 selects 512)
    """
    address: str
    registry: "Registry"
    flush_interval: float
    duration_unit: float = 1.0
    prefix: str = ""
    buffer_size: int = 0

    def __post_init__(self) -> None:
        if self.flush_interval <= 0:
            raise ConfigurationError(
                f"flush_interval must be greater than zero, got {self.flush_interval}"
            )
        if not self.address:
            raise ConfigurationError("address must not be empty")

    @classmethod
    def from_settings(
        cls,
        registry: "Registry",
        source: Optional[Settings] = None
    ) -> "StatsdConfig":
        """
        Build an exporter configuration from application settings.

        Args:
            registry: Registry to export
            source: Settings to read (defaults to the module settings)

        Returns:
            StatsdConfig instance
        """
        source = source or settings
        return cls(
            address=source.statsd_address,
            registry=registry,
            flush_interval=source.statsd_flush_interval,
            duration_unit=source.duration_multiplier,
            prefix=source.statsd_prefix,
            buffer_size=source.statsd_buffer_size,
        )


settings = Settings()

__all__ = [
    "ConfigurationError",
    "DEFAULT_BUFFER_SIZE",
    "DEFAULT_STATSD_ADDRESS",
    "DURATION_UNITS",
    "Settings",
    "StatsdConfig",
    "settings",
]
