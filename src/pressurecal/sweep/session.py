"""Calibration session state machine.

```
IDLE -> CONNECTING -> CONFIGURING_INSTRUMENT -> ZERO_CHECK -> SWEEPING
     -> COMPLETED | ABORTED | FAILED
```

`run` drives the machine to a terminal state. The router runs one state
handler per iteration (one sweep step per iteration while SWEEPING). The
cancellation flag is checked before every handler and by every wait inside
one. A `cancel()` therefore lands in ABORTED at the next step boundary (or
within one settle poll). An in-flight instrument command is never
interrupted.

Each peripheral is sent its zero and low calibration points once the
instrument is at zero, and its high point at the top of the ascending leg. A
peripheral that drops its link or rejects a write is taken out of the run and
gets no result. The run fails if none are left.

Whatever the outcome, everything the session acquired is released exactly
once on the way out (see `ShutdownSequence`): the instrument is sent back to
zero and disconnected, and the peripherals it connected are disconnected.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import types
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Awaitable

from loguru import logger
from mashumaro import DataClassDictMixin

from pressurecal.device.peripheral import (
    DeviceInfoLookup,
    PeripheralConnectionManager,
)
from pressurecal.sweep.results import (
    CalibrationResult,
    StepMeasurement,
    build_results,
)
from pressurecal.sweep.scheduler import (
    AdvanceResult,
    SweepPhase,
    SweepScheduler,
    SweepStep,
)
from pressurecal.types.config import SweepConfig
from pressurecal.types.errors import (
    CalibrationError,
    DeviceConnectionError,
    OperationCancelledError,
)
from pressurecal.types.messages import (
    CalibrationResultReady,
    SessionAborted,
    SessionFailed,
    SessionStateChanged,
    notify,
)
from pressurecal.types.peripheral import ConnectionResults, DiscoveredPeripheral
from pressurecal.types.protocols import InstrumentDriver
from pressurecal.util.defaults import DEFAULT_DISCREPANCY_TOLERANCE
from pressurecal.util.shutdown import ShutdownSequence

SESSION_STATE = types.SimpleNamespace()
SESSION_STATE.IDLE = "IDLE"
SESSION_STATE.CONNECTING = "CONNECTING"
SESSION_STATE.CONFIGURING_INSTRUMENT = "CONFIGURING_INSTRUMENT"
SESSION_STATE.ZERO_CHECK = "ZERO_CHECK"
SESSION_STATE.SWEEPING = "SWEEPING"
SESSION_STATE.COMPLETED = "COMPLETED"
SESSION_STATE.ABORTED = "ABORTED"
SESSION_STATE.FAILED = "FAILED"

TERMINAL_STATES = (
    SESSION_STATE.COMPLETED,
    SESSION_STATE.ABORTED,
    SESSION_STATE.FAILED,
)

# attributes of our exceptions worth reporting with a failure
_ERROR_CONTEXT_ATTRS = (
    "name",
    "command",
    "expected",
    "observed",
    "measured",
    "difference",
    "device_id",
    "attempts",
)

PartialPolicy = Callable[[ConnectionResults], bool | Awaitable[bool]]
ResultSink = Callable[[CalibrationResult], Any]


def proceed_if_any_connected(results: ConnectionResults) -> bool:
    return results.any_connected


def require_all_connected(results: ConnectionResults) -> bool:
    return results.all_connected


@dataclass(frozen=True)
class StartRequest:
    selected_device_ids: tuple[str, ...]
    sweep_config: SweepConfig
    device_info: DeviceInfoLookup | None = None

    def __post_init__(self):
        ids = tuple(self.selected_device_ids)
        object.__setattr__(self, "selected_device_ids", ids)


@dataclass(frozen=True)
class SessionStatus(DataClassDictMixin):
    session_id: str
    state: str
    current_step_index: int
    total_steps: int
    is_increasing_phase: bool
    connected_device_ids: list[str] = field(default_factory=list)


class CalibrationSession:
    """One calibration run, from connecting peripherals to releasing them.

    Parameters
    ----------
    instrument : InstrumentDriver
        Real or simulated reference instrument (not yet connected).
    peripherals : PeripheralConnectionManager
        Owns this session's device registry.
    notif_queue : asyncio.Queue, optional
        Receives state changes and every sub-component's events.
    partial_policy : Callable[[ConnectionResults], bool], optional
        Asked whether to continue when only some peripherals connected.
        May be async. Defaults to continuing if any connected.
    result_sink : Callable[[CalibrationResult], Any], optional
        Called (or awaited) once per device on completion.
    discrepancy_tolerance : float
        Certification threshold for average |sensor - reference|.
    """

    def __init__(
        self,
        instrument: InstrumentDriver,
        peripherals: PeripheralConnectionManager,
        notif_queue: asyncio.Queue | None = None,
        partial_policy: PartialPolicy | None = None,
        result_sink: ResultSink | None = None,
        discrepancy_tolerance: float = DEFAULT_DISCREPANCY_TOLERANCE,
    ):
        if not isinstance(instrument, InstrumentDriver):
            raise TypeError(f"{instrument!r} does not implement InstrumentDriver")
        self.session_id = str(uuid.uuid4())
        self.instrument = instrument
        self.peripherals = peripherals
        self.notif_queue = notif_queue
        self.partial_policy = partial_policy or proceed_if_any_connected
        self.result_sink = result_sink
        self.discrepancy_tolerance = discrepancy_tolerance
        self.scheduler = SweepScheduler(instrument, notif_queue)

        self.state = SESSION_STATE.IDLE
        self.error: BaseException | None = None
        self.abort_reason = ""
        self.connection_results: ConnectionResults | None = None
        self.measurements: list[StepMeasurement] = []
        self.results: list[CalibrationResult] = []

        self._request: StartRequest | None = None
        self._started_at = 0.0
        self._cancel_event = asyncio.Event()
        self._shutdown = ShutdownSequence(f"session {self.session_id[:8]}")

    def __repr__(self):
        return f"CalibrationSession({self.session_id[:8]}, {self.state})"

    # ----------------------------------------------------------------------------------
    # control surface
    # ----------------------------------------------------------------------------------

    def cancel(self) -> None:
        """Ask the session to stop at the next step boundary."""
        if self.state in TERMINAL_STATES:
            return
        logger.info("Cancellation requested for {}", self)
        self._cancel_event.set()

    def is_active(self) -> bool:
        return not self._cancel_event.is_set() and self.state not in TERMINAL_STATES

    @property
    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def status(self) -> SessionStatus:
        return SessionStatus(
            session_id=self.session_id,
            state=self.state,
            current_step_index=self.scheduler.current_step_index,
            total_steps=self.scheduler.total_steps,
            is_increasing_phase=self.scheduler.is_increasing_phase,
            connected_device_ids=[d.id for d in self.peripherals.connected_devices()],
        )

    async def run(self, request: StartRequest) -> str:
        """Run the whole calibration. Returns the terminal state.

        Raises
        ------
        SweepConfigError
            Invalid sweep profile. Raised before anything is acquired, the
            session stays IDLE.
        RuntimeError
            The session has already been run.
        """
        if self.state != SESSION_STATE.IDLE or self._request is not None:
            raise RuntimeError(f"{self} has already been run")
        self.scheduler.start(request.sweep_config)
        self._request = request
        self._started_at = time.time()
        logger.info(
            "Starting calibration session {} with {} peripheral(s), {} steps",
            self.session_id,
            len(request.selected_device_ids),
            self.scheduler.total_steps,
        )
        try:
            await self.state_machine()
        except asyncio.CancelledError:
            self.abort_reason = "Session task cancelled"
            self._transition(SESSION_STATE.ABORTED)
            raise
        finally:
            await self._shutdown.close()
        return self.state

    # ----------------------------------------------------------------------------------
    # state machine
    # ----------------------------------------------------------------------------------

    async def state_machine(self) -> None:
        self._transition(SESSION_STATE.CONNECTING)
        while self.state not in TERMINAL_STATES:
            try:
                next_state = await self._router(self.state)
            except OperationCancelledError as e:
                logger.info("{} cancelled: {}", self, e)
                self.abort_reason = str(e)
                next_state = SESSION_STATE.ABORTED
            except CalibrationError as e:
                logger.error("{} failed: {}", self, e)
                self.error = e
                next_state = SESSION_STATE.FAILED
            except Exception as e:
                logger.exception("Unexpected error in calibration session.")
                self.error = e
                next_state = SESSION_STATE.FAILED
            self._transition(next_state)

    async def _router(self, state: str) -> str:
        if self._cancel_event.is_set():
            raise OperationCancelledError(f"Cancelled by operator in {state}")
        match state:
            case SESSION_STATE.CONNECTING:
                return await self._state_connecting()
            case SESSION_STATE.CONFIGURING_INSTRUMENT:
                return await self._state_configuring_instrument()
            case SESSION_STATE.ZERO_CHECK:
                return await self._state_zero_check()
            case SESSION_STATE.SWEEPING:
                return await self._state_sweeping()
            case _:
                raise RuntimeError(f"No handler for session state {state}")

    def _transition(self, next_state: str) -> None:
        if next_state == self.state:
            return
        logger.info(
            "Session {} state: {} -> {}", self.session_id[:8], self.state, next_state
        )
        notify(
            self.notif_queue,
            SessionStateChanged(
                session_id=self.session_id, old_state=self.state, new_state=next_state
            ),
        )
        self.state = next_state
        if next_state == SESSION_STATE.ABORTED:
            notify(
                self.notif_queue,
                SessionAborted(session_id=self.session_id, reason=self.abort_reason),
            )
        elif next_state == SESSION_STATE.FAILED:
            notify(
                self.notif_queue,
                SessionFailed(
                    session_id=self.session_id,
                    error_type=type(self.error).__name__,
                    message=str(self.error),
                    context=_error_context(self.error),
                ),
            )

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise OperationCancelledError(f"Cancelled by operator in {self.state}")

    # ----------------------------------------------------------------------------------
    # states
    # ----------------------------------------------------------------------------------

    async def _state_connecting(self) -> str:
        device_ids = self._request.selected_device_ids
        if device_ids:
            self._shutdown.register("peripherals", self.peripherals.disconnect_all)
            device_info = self._request.device_info
            if device_info is None:
                found = await self.peripherals.discover()
                device_info = {
                    d.id: DiscoveredPeripheral(d.id, d.name, d.address, d.rssi)
                    for d in found
                }
            results = await self.peripherals.connect_sequential(
                device_ids, device_info, self.is_active
            )
            self.connection_results = results
            self._check_cancelled()
            if not results.any_connected:
                reasons = "; ".join(f"{f.id}: {f.reason}" for f in results.failed)
                raise DeviceConnectionError(
                    ",".join(device_ids),
                    f"no peripherals connected ({reasons})",
                    attempts=max((f.attempts for f in results.failed), default=0),
                )
            if results.failed:
                logger.warning(
                    "Only {}/{} peripherals connected (failed: {})",
                    len(results.successful),
                    len(device_ids),
                    results.failed_ids,
                )
                proceed = self.partial_policy(results)
                if inspect.isawaitable(proceed):
                    proceed = await proceed
                if not proceed:
                    raise OperationCancelledError(
                        "Partial connection declined: "
                        + f"{len(results.failed)} peripheral(s) failed"
                    )
            self._check_cancelled()

        self._shutdown.register("instrument", self.instrument.disconnect)
        await self.instrument.connect()
        self._shutdown.register("instrument zero", self.instrument.return_to_zero)
        return SESSION_STATE.CONFIGURING_INSTRUMENT

    async def _state_configuring_instrument(self) -> str:
        await self.instrument.run_prerequisites(self.is_active)
        self._check_cancelled()
        return SESSION_STATE.ZERO_CHECK

    async def _state_zero_check(self) -> str:
        if not await self.instrument.check_zero_pressure():
            self._check_cancelled()
            await self.instrument.set_zero_pressure(
                verify=True, is_active=self.is_active
            )
        self._check_cancelled()
        for kind in ("zero", "low"):
            await self.peripherals.write_calibration_point_to_all(
                kind, 0.0, self.is_active
            )
            self._check_cancelled()
            self._require_peripherals()
        return SESSION_STATE.SWEEPING

    async def _state_sweeping(self) -> str:
        result = await self.scheduler.advance(self.is_active)
        if result.step is not None:
            await self.peripherals.drop_disconnected()
            self._require_peripherals()
            if self._is_peak(result.step):
                await self.peripherals.write_calibration_point_to_all(
                    "high", result.step.pressure, self.is_active
                )
                self._check_cancelled()
                self._require_peripherals()
            await self._capture(result)
        if not result.completed:
            return SESSION_STATE.SWEEPING
        await self.peripherals.drop_disconnected()
        self._require_peripherals()
        await self._publish_results()
        return SESSION_STATE.COMPLETED

    def _is_peak(self, step: SweepStep) -> bool:
        n_inc = len(self._request.sweep_config.increasing_steps)
        return step.phase == SweepPhase.INCREASING and step.index == n_inc - 1

    def _require_peripherals(self) -> None:
        # a run without peripherals (none selected) has nothing to lose
        if not self._request.selected_device_ids:
            return
        if not self.peripherals.connected_devices():
            raise CalibrationError("No peripherals left in the calibration")

    async def _capture(self, result: AdvanceResult) -> None:
        readings = {}
        for dev in self.peripherals.connected_devices():
            readings[dev.id] = await self.peripherals.read_pressure(dev.id)
        self.measurements.append(
            StepMeasurement(
                step_index=result.step.index,
                phase=result.step.phase.value,
                setpoint=result.step.pressure,
                instrument_pressure=result.measured_pressure,
                device_readings=readings,
            )
        )
        logger.debug("Step {} readings: {}", result.step.index, readings)

    async def _publish_results(self) -> None:
        self.results = build_results(
            self.session_id,
            self.peripherals.connected_devices(),
            self.measurements,
            self._request.sweep_config,
            self._started_at,
            self.discrepancy_tolerance,
        )
        for result in self.results:
            if self.result_sink is not None:
                ret = self.result_sink(result)
                if inspect.isawaitable(ret):
                    await ret
            notify(
                self.notif_queue,
                CalibrationResultReady(
                    session_id=self.session_id,
                    device_id=result.device_id,
                    certified=result.certification.certified,
                ),
            )


def _error_context(error: BaseException | None) -> dict[str, Any]:
    if error is None:
        return {}
    context = {}
    for attr in _ERROR_CONTEXT_ATTRS:
        if hasattr(error, attr):
            value = getattr(error, attr)
            context[attr] = value if isinstance(value, (int, float, str)) else str(value)
    return context
