"""Notifications emitted by pressurecal components.

Every component takes an optional ``notif_queue`` (an ``asyncio.Queue``) and
puts these dataclasses on it without waiting. Consumers dispatch on the
``type`` field, which also drives (de)serialisation of the union.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any

from loguru import logger
from mashumaro.mixins.msgpack import DataClassMessagePackMixin
from mashumaro.types import Discriminator


@dataclass
class Message(DataClassMessagePackMixin):
    """Base class for all messages."""

    def __repr__(self):
        fields = ", ".join(f"{k}={v}" for k, v in self.__dict__.items())
        return f"{self.__class__.__name__}({fields})"


@dataclass(kw_only=True, repr=False)
class Notification(Message):
    type: str
    timestamp: float = field(default_factory=time.time)

    class Config:
        discriminator = Discriminator(field="type", include_subtypes=True)


# ----------------------------------------------------------------------------------
# instrument link
# ----------------------------------------------------------------------------------


@dataclass(kw_only=True, repr=False)
class InstrumentConnected(Notification):
    type: str = "instrument_connected"
    host: str
    port: int


@dataclass(kw_only=True, repr=False)
class InstrumentDisconnected(Notification):
    type: str = "instrument_disconnected"
    host: str
    port: int
    expected: bool = True


@dataclass(kw_only=True, repr=False)
class InstrumentError(Notification):
    type: str = "instrument_error"
    message: str
    fatal: bool = False


@dataclass(kw_only=True, repr=False)
class InstrumentReconnecting(Notification):
    type: str = "instrument_reconnecting"
    attempt: int
    max_attempts: int
    delay: float


@dataclass(kw_only=True, repr=False)
class CommandSent(Notification):
    type: str = "command_sent"
    command: str


@dataclass(kw_only=True, repr=False)
class ResponseReceived(Notification):
    type: str = "response_received"
    command: str
    response: str


# ----------------------------------------------------------------------------------
# peripherals
# ----------------------------------------------------------------------------------


@dataclass(kw_only=True, repr=False)
class DeviceConnectionStarted(Notification):
    type: str = "device_connection_started"
    device_id: str
    name: str
    index: int
    total: int


@dataclass(kw_only=True, repr=False)
class DeviceConnectionRetry(Notification):
    type: str = "device_connection_retry"
    device_id: str
    attempt: int
    max_attempts: int
    error: str


@dataclass(kw_only=True, repr=False)
class DeviceConnectionSucceeded(Notification):
    type: str = "device_connection_succeeded"
    device_id: str
    display_name: str
    firmware_version: str
    attempts: int


@dataclass(kw_only=True, repr=False)
class DeviceConnectionFailed(Notification):
    type: str = "device_connection_failed"
    device_id: str
    reason: str
    attempts: int


@dataclass(kw_only=True, repr=False)
class DeviceDisconnected(Notification):
    type: str = "device_disconnected"
    device_id: str
    error: str = ""


@dataclass(kw_only=True, repr=False)
class CalibrationPointWritten(Notification):
    type: str = "calibration_point_written"
    device_id: str
    kind: str  # zero, low or high
    pressure: float
    attempts: int


@dataclass(kw_only=True, repr=False)
class AllDevicesDisconnected(Notification):
    type: str = "all_devices_disconnected"
    count: int


@dataclass(kw_only=True, repr=False)
class ConnectionsComplete(Notification):
    type: str = "connections_complete"
    successful: list[str]
    failed: list[str]


# ----------------------------------------------------------------------------------
# sweep & session
# ----------------------------------------------------------------------------------


@dataclass(kw_only=True, repr=False)
class StepReady(Notification):
    type: str = "step_ready"
    current_step: int  # 1-based, for display
    total_steps: int
    step_index: int
    pressure: float
    phase: str
    measured_pressure: float | None = None


@dataclass(kw_only=True, repr=False)
class PhaseChanged(Notification):
    type: str = "phase_changed"
    old_phase: str
    new_phase: str
    step_index: int


@dataclass(kw_only=True, repr=False)
class SweepCompleted(Notification):
    type: str = "sweep_completed"
    total_steps: int


@dataclass(kw_only=True, repr=False)
class SessionStateChanged(Notification):
    type: str = "session_state_changed"
    session_id: str
    old_state: str
    new_state: str


@dataclass(kw_only=True, repr=False)
class SessionAborted(Notification):
    type: str = "session_aborted"
    session_id: str
    reason: str


@dataclass(kw_only=True, repr=False)
class SessionFailed(Notification):
    type: str = "session_failed"
    session_id: str
    error_type: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(kw_only=True, repr=False)
class CalibrationResultReady(Notification):
    type: str = "calibration_result_ready"
    session_id: str
    device_id: str
    certified: bool


def notify(notif_queue: asyncio.Queue | None, notif: Notification) -> None:
    """Put a notification on the queue (if there is one) without waiting."""
    logger.trace("Notification: {}", notif)
    if notif_queue is not None:
        notif_queue.put_nowait(notif)


async def wait_for_notification(
    notif_queue: asyncio.Queue, notif_type: type[Notification], timeout: float = 5.0
) -> Notification:
    """Consume the queue until a notification of `notif_type` arrives.

    Notifications of other types are dropped.

    Raises
    ------
    TimeoutError
        If nothing of the right type arrives within `timeout` seconds.
    """

    async def _wait():
        while True:
            notif = await notif_queue.get()
            if isinstance(notif, notif_type):
                return notif

    return await asyncio.wait_for(_wait(), timeout)


def drain_notifications(notif_queue: asyncio.Queue) -> list[Notification]:
    """Return everything currently on the queue, in order."""
    notifs = []
    while not notif_queue.empty():
        notifs.append(notif_queue.get_nowait())
    return notifs
