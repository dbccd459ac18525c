"""Configuration types for sweeps, the instrument and wireless peripherals."""

from __future__ import annotations

from dataclasses import dataclass, field

from mashumaro import DataClassDictMixin

from pressurecal.types.errors import SweepConfigError
from pressurecal.util.defaults import (
    DEFAULT_CHARACTERISTIC_READ_TIMEOUT,
    DEFAULT_CLEANUP_DELAY,
    DEFAULT_CLOSE_TIMEOUT,
    DEFAULT_COMMAND_DELAY,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_CONNECTION_TIMEOUT,
    DEFAULT_DISCONNECT_TIMEOUT,
    DEFAULT_DISCREPANCY_TOLERANCE,
    DEFAULT_ENFORCE_SETTLE_DELAY,
    DEFAULT_INSTRUMENT_HOST,
    DEFAULT_INSTRUMENT_PORT,
    DEFAULT_INSTRUMENT_TOLERANCE,
    DEFAULT_INTER_CONNECTION_DELAY,
    DEFAULT_MAX_PRESSURE,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PRESSURE_TOLERANCE,
    DEFAULT_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_BASE_DELAY,
    DEFAULT_RECONNECT_MAX_DELAY,
    DEFAULT_RETRIES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_SCAN_TIMEOUT,
    DEFAULT_STACK_RELEASE_DELAY,
    DEFAULT_TIMEOUT,
    DEFAULT_WRITE_DELAY,
    DEFAULT_WRITE_RETRIES,
    DEFAULT_WRITE_TIMEOUT,
)
from pressurecal.util.list_gen import gen_decreasing_steps, gen_increasing_steps


@dataclass(frozen=True)
class SweepConfig(DataClassDictMixin):
    """Pressure profile for one sweep: ascending leg, then descending leg.

    Immutable for the lifetime of a sweep. Use `validate` (called by the
    scheduler on start) to check it is runnable.
    """

    increasing_steps: tuple[float, ...]
    decreasing_steps: tuple[float, ...]
    tolerance_absolute: float = DEFAULT_PRESSURE_TOLERANCE

    def __post_init__(self):
        # accept any sequence, store tuples
        object.__setattr__(self, "increasing_steps", tuple(self.increasing_steps))
        object.__setattr__(self, "decreasing_steps", tuple(self.decreasing_steps))

    @classmethod
    def from_max_pressure(
        cls,
        max_pressure: float = DEFAULT_MAX_PRESSURE,
        tolerance_absolute: float = DEFAULT_PRESSURE_TOLERANCE,
    ) -> SweepConfig:
        increasing = gen_increasing_steps(max_pressure)
        # peak is the last ascending point, don't repeat it on the way down
        decreasing = gen_decreasing_steps(increasing[-1])[1:]
        return cls(
            increasing_steps=tuple(increasing),
            decreasing_steps=tuple(decreasing),
            tolerance_absolute=tolerance_absolute,
        )

    @property
    def total_steps(self) -> int:
        return len(self.increasing_steps) + len(self.decreasing_steps)

    @property
    def max_pressure(self) -> float:
        return max(self.increasing_steps + self.decreasing_steps, default=0.0)

    def validate(self) -> None:
        """Raise SweepConfigError unless both legs are non-empty and sane."""
        if not self.increasing_steps or not self.decreasing_steps:
            raise SweepConfigError(
                "Sweep needs both increasing and decreasing steps "
                + f"(got {len(self.increasing_steps)} increasing, "
                + f"{len(self.decreasing_steps)} decreasing)"
            )
        if any(p < 0 for p in self.increasing_steps + self.decreasing_steps):
            raise SweepConfigError("Sweep pressures must be >= 0")
        if self.tolerance_absolute <= 0:
            raise SweepConfigError(
                f"tolerance_absolute must be > 0, got {self.tolerance_absolute}"
            )


@dataclass(kw_only=True)
class InstrumentSettings(DataClassDictMixin):
    """Reference instrument connection and protocol timing.

    All times in seconds.
    """

    host: str = DEFAULT_INSTRUMENT_HOST
    port: int = DEFAULT_INSTRUMENT_PORT
    simulated: bool = False
    response_timeout: float = DEFAULT_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    close_timeout: float = DEFAULT_CLOSE_TIMEOUT
    auto_reconnect: bool = True
    max_reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS
    reconnect_base_delay: float = DEFAULT_RECONNECT_BASE_DELAY
    reconnect_max_delay: float = DEFAULT_RECONNECT_MAX_DELAY
    command_delay: float = DEFAULT_COMMAND_DELAY
    enforce_settle_delay: float = DEFAULT_ENFORCE_SETTLE_DELAY
    poll_interval: float = DEFAULT_POLL_INTERVAL
    instrument_tolerance: float = DEFAULT_INSTRUMENT_TOLERANCE
    pressure_tolerance: float = DEFAULT_PRESSURE_TOLERANCE


@dataclass(kw_only=True)
class PeripheralSettings(DataClassDictMixin):
    """Wireless peripheral connection sequencing. All times in seconds."""

    max_retries: int = DEFAULT_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    inter_connection_delay: float = DEFAULT_INTER_CONNECTION_DELAY
    cleanup_delay: float = DEFAULT_CLEANUP_DELAY
    stack_release_delay: float = DEFAULT_STACK_RELEASE_DELAY
    connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT
    disconnect_timeout: float = DEFAULT_DISCONNECT_TIMEOUT
    characteristic_read_timeout: float = DEFAULT_CHARACTERISTIC_READ_TIMEOUT
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    write_retries: int = DEFAULT_WRITE_RETRIES
    write_timeout: float = DEFAULT_WRITE_TIMEOUT
    write_delay: float = DEFAULT_WRITE_DELAY
    simulated: bool = False


@dataclass(kw_only=True)
class CalibrationSettings(DataClassDictMixin):
    """Everything a calibration run needs, as loaded from settings.ini."""

    instrument: InstrumentSettings = field(default_factory=InstrumentSettings)
    peripheral: PeripheralSettings = field(default_factory=PeripheralSettings)
    max_pressure: float = DEFAULT_MAX_PRESSURE
    discrepancy_tolerance: float = DEFAULT_DISCREPANCY_TOLERANCE
    save_dir: str = "./calibrations/"

    def sweep_config(self) -> SweepConfig:
        return SweepConfig.from_max_pressure(
            self.max_pressure, self.instrument.pressure_tolerance
        )
