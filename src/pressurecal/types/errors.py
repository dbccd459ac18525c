"""Exception taxonomy for pressurecal.

Transport faults are retried where they occur (link reconnect, per-device
connection retries) and only surface once their budget is exhausted.
Verification failures and configuration errors are never retried. Operator
cancellation has its own type so it is never mistaken for a fault.

```
CalibrationError
├── InstrumentConnectionError (ConnectionError)
│   └── InstrumentNotConnectedError
├── InstrumentTimeoutError (TimeoutError)
│   └── InstrumentBusyError
├── InstrumentResponseError
├── PrerequisiteError
├── PressureSetError
├── OperationCancelledError
├── DeviceConnectionError (ConnectionError)
└── SweepConfigError (ValueError)
```
"""

from __future__ import annotations


class CalibrationError(Exception):
    """Base class for all pressurecal errors."""


class InstrumentConnectionError(CalibrationError, ConnectionError):
    """The TCP session to the reference instrument failed or was lost."""


class InstrumentNotConnectedError(InstrumentConnectionError):
    def __init__(self, msg: str = "Instrument is not connected"):
        super().__init__(msg)


class InstrumentTimeoutError(CalibrationError, TimeoutError):
    pass


class InstrumentBusyError(InstrumentTimeoutError):
    """No response to a query within the response timeout."""

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(
            f"Instrument is busy: response to '{command}' timed out after {timeout}s"
        )


class InstrumentResponseError(CalibrationError):
    """A reply could not be interpreted (e.g. a non-numeric pressure)."""

    def __init__(self, command: str, response: str | None):
        self.command = command
        self.response = response
        super().__init__(f"Unexpected response to '{command}': {response!r}")


class PrerequisiteError(CalibrationError):
    """An instrument setting did not take effect after being enforced."""

    def __init__(self, name: str, command: str, expected: str, observed: str | None):
        self.name = name
        self.command = command
        self.expected = expected
        self.observed = observed
        super().__init__(
            f"{name} prerequisite failed: '{command}' returned {observed!r}, "
            + f"expected {expected}"
        )


class PressureSetError(CalibrationError):
    def __init__(self, expected: float, measured: float, difference: float):
        self.expected = expected
        self.measured = measured
        self.difference = difference
        super().__init__(
            f"Pressure verification failed: expected {expected}, measured "
            + f"{measured} (difference {difference:.3f})"
        )


class OperationCancelledError(CalibrationError):
    """The operator stopped the run. Not a fault."""

    def __init__(self, msg: str = "Operation cancelled"):
        super().__init__(msg)


class DeviceConnectionError(CalibrationError, ConnectionError):
    def __init__(self, device_id: str, reason: str, attempts: int = 1):
        self.device_id = device_id
        self.reason = reason
        self.attempts = attempts
        super().__init__(
            f"Device {device_id} failed to connect after {attempts} "
            + f"attempt(s): {reason}"
        )


class CalibrationWriteError(CalibrationError):
    def __init__(self, device_id: str, kind: str, reason: str, attempts: int = 1):
        self.device_id = device_id
        self.kind = kind
        self.reason = reason
        self.attempts = attempts
        super().__init__(
            f"Device {device_id} rejected the {kind} calibration point after "
            + f"{attempts} attempt(s): {reason}"
        )


class SweepConfigError(CalibrationError, ValueError):
    pass
