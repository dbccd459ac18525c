"""Per-step measurements and certification metrics for swept peripherals.

Metrics per device, over all valid (reference, sensor) pairs:

- average discrepancy: mean |sensor - reference|; the device is certified
  when this is within the discrepancy tolerance
- linearity: largest |sensor - reference| as a percentage of full scale
- hysteresis: largest difference between the ascending and descending
  sensor readings taken at the same setpoint
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

import numpy as np
from loguru import logger
from mashumaro import DataClassDictMixin

from pressurecal.types.config import SweepConfig
from pressurecal.types.peripheral import PeripheralDevice
from pressurecal.util.defaults import DEFAULT_DISCREPANCY_TOLERANCE


@dataclass(kw_only=True)
class StepMeasurement(DataClassDictMixin):
    """Everything recorded at one settled sweep step."""

    step_index: int
    phase: str
    setpoint: float
    instrument_pressure: float | None
    device_readings: dict[str, float | None] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    @property
    def reference_pressure(self) -> float:
        # measured reference if we have it, else the commanded setpoint
        if self.instrument_pressure is not None:
            return self.instrument_pressure
        return self.setpoint


@dataclass(kw_only=True)
class CalibrationPoint(DataClassDictMixin):
    step_index: int
    phase: str
    setpoint: float
    reference_pressure: float
    sensor_pressure: float | None
    timestamp: float

    @property
    def error(self) -> float | None:
        if self.sensor_pressure is None:
            return None
        return self.sensor_pressure - self.reference_pressure


@dataclass(kw_only=True)
class Certification(DataClassDictMixin):
    certified: bool
    reason: str
    total_readings: int
    average_discrepancy: float | None = None
    max_error: float | None = None
    linearity_pct_fs: float | None = None
    hysteresis: float | None = None


@dataclass(kw_only=True)
class CalibrationResult(DataClassDictMixin):
    session_id: str
    device_id: str
    device_name: str
    firmware_version: str
    config: SweepConfig
    per_step_measurements: list[CalibrationPoint]
    certification: Certification
    started_at: float
    finished_at: float = field(default_factory=time.time)


def points_for_device(
    measurements: list[StepMeasurement], device_id: str
) -> list[CalibrationPoint]:
    return [
        CalibrationPoint(
            step_index=m.step_index,
            phase=m.phase,
            setpoint=m.setpoint,
            reference_pressure=m.reference_pressure,
            sensor_pressure=m.device_readings.get(device_id),
            timestamp=m.timestamp,
        )
        for m in measurements
    ]


def hysteresis(points: list[CalibrationPoint]) -> float:
    """Largest |ascending - descending| sensor reading at a shared setpoint."""
    by_setpoint: dict[float, dict[str, float]] = {}
    for p in points:
        if p.sensor_pressure is None:
            continue
        by_setpoint.setdefault(p.setpoint, {}).setdefault(p.phase, p.sensor_pressure)
    diffs = [
        abs(legs["increasing"] - legs["decreasing"])
        for legs in by_setpoint.values()
        if "increasing" in legs and "decreasing" in legs
    ]
    return float(max(diffs, default=0.0))


def certify(
    points: list[CalibrationPoint],
    full_scale: float,
    tolerance: float = DEFAULT_DISCREPANCY_TOLERANCE,
) -> Certification:
    valid = [p for p in points if p.sensor_pressure is not None]
    if not valid:
        return Certification(
            certified=False, reason="No valid readings available", total_readings=0
        )

    errors = np.array([p.sensor_pressure - p.reference_pressure for p in valid])
    abs_errors = np.abs(errors)
    average = float(np.mean(abs_errors))
    linearity = float(np.max(abs_errors) / full_scale * 100) if full_scale > 0 else None
    certified = average <= tolerance
    if certified:
        reason = "Passed certification criteria"
    else:
        reason = (
            f"Failed: average discrepancy ({average:.1f}) exceeds {tolerance}"
        )
    return Certification(
        certified=certified,
        reason=reason,
        total_readings=len(valid),
        average_discrepancy=average,
        max_error=float(errors[np.argmax(abs_errors)]),
        linearity_pct_fs=linearity,
        hysteresis=hysteresis(valid),
    )


def build_results(
    session_id: str,
    devices: list[PeripheralDevice],
    measurements: list[StepMeasurement],
    config: SweepConfig,
    started_at: float,
    tolerance: float = DEFAULT_DISCREPANCY_TOLERANCE,
) -> list[CalibrationResult]:
    """One `CalibrationResult` per device, in device order."""
    results = []
    for dev in devices:
        points = points_for_device(measurements, dev.id)
        cert = certify(points, config.max_pressure, tolerance)
        logger.info(
            "Device {} ({}): {}", dev.display_name, dev.id, cert.reason
        )
        results.append(
            CalibrationResult(
                session_id=session_id,
                device_id=dev.id,
                device_name=dev.display_name,
                firmware_version=dev.firmware_version,
                config=config,
                per_step_measurements=points,
                certification=cert,
                started_at=started_at,
            )
        )
    return results
