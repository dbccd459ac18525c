"""
Pressure sweeps and the calibration session that runs them.

- `SweepScheduler`: executes an ascending-then-descending profile step by step
- `CalibrationSession`: connect -> configure -> zero check -> sweep, with
  cancellation and guaranteed teardown
- `results`: per-step measurements and certification metrics
"""

from .results import (
    CalibrationPoint,
    CalibrationResult,
    Certification,
    StepMeasurement,
    certify,
    hysteresis,
)
from .scheduler import (
    AdvanceResult,
    SweepPhase,
    SweepScheduler,
    SweepStatus,
    SweepStep,
    step_at,
    sweep_steps,
)
from .session import (
    SESSION_STATE,
    TERMINAL_STATES,
    CalibrationSession,
    SessionStatus,
    StartRequest,
    proceed_if_any_connected,
    require_all_connected,
)
