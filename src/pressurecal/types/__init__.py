"""Shared types: configuration, notifications, errors and hardware protocols."""

from .config import (
    CalibrationSettings,
    InstrumentSettings,
    PeripheralSettings,
    SweepConfig,
)
from .errors import (
    CalibrationError,
    CalibrationWriteError,
    DeviceConnectionError,
    InstrumentBusyError,
    InstrumentConnectionError,
    InstrumentNotConnectedError,
    InstrumentResponseError,
    InstrumentTimeoutError,
    OperationCancelledError,
    PrerequisiteError,
    PressureSetError,
    SweepConfigError,
)
from .messages import (
    AllDevicesDisconnected,
    CalibrationPointWritten,
    CalibrationResultReady,
    CommandSent,
    ConnectionsComplete,
    DeviceConnectionFailed,
    DeviceConnectionRetry,
    DeviceConnectionStarted,
    DeviceConnectionSucceeded,
    DeviceDisconnected,
    InstrumentConnected,
    InstrumentDisconnected,
    InstrumentError,
    InstrumentReconnecting,
    Notification,
    PhaseChanged,
    ResponseReceived,
    SessionAborted,
    SessionFailed,
    SessionStateChanged,
    StepReady,
    SweepCompleted,
    drain_notifications,
    notify,
    wait_for_notification,
)
from .peripheral import (
    ConnectionResults,
    DiscoveredPeripheral,
    FailedConnection,
    PeripheralDevice,
    PeripheralState,
)
from .protocols import InstrumentDriver, IsActive, PeripheralBackend
