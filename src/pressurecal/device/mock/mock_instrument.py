from __future__ import annotations

import asyncio
import collections
import dataclasses

import numpy as np
from loguru import logger

from pressurecal.device import commands as cmds
from pressurecal.device.instrument import InstrumentController
from pressurecal.device.instrument_link import InstrumentLink
from pressurecal.types.config import InstrumentSettings
from pressurecal.types.errors import InstrumentNotConnectedError
from pressurecal.types.messages import InstrumentDisconnected
from pressurecal.util.defaults import DEFAULT_TIMEOUT

SIM_IDENT = "FLUKE,6270A,SIM0001,1.00"

# timing used when a simulated instrument is built from ordinary settings
SIMULATED_TIMING = {
    "command_delay": 0.05,
    "enforce_settle_delay": 0.05,
    "poll_interval": 0.1,
}


def _key(command: str) -> str:
    return command.strip().upper()


class SimulatedCalibrator:
    """In-memory model of the pressure reference's remote interface.

    Understands the command set in `pressurecal.device.commands`. A new
    setpoint is reached after `settle_polls` unsettled status reads; the
    reading is then ``target + pressure_offset`` (plus optional gaussian
    noise).

    Fault injection
    ---------------
    stuck : set[str]
        Command headers (e.g. ``"SOURce:PRESsure:STATic"``) whose writes are
        silently ignored.
    muted : set[str]
        Queries that never get a reply.
    response_delay : float
        Seconds before each reply is delivered.
    """

    def __init__(
        self,
        output_on: bool = False,
        mode: str = "MEASURE",
        static_mode: bool = True,
        tolerance: float = 0.01,
        pressure: float = 0.0,
        settle_polls: int = 1,
        pressure_offset: float = 0.0,
        noise: float = 0.0,
        unit: str = "PSI",
        seed: int | None = None,
    ):
        self.output_on = output_on
        self.mode = mode
        self.static_mode = static_mode
        self.tolerance = tolerance
        self.target = pressure
        self.pressure = pressure
        self.settle_polls = settle_polls
        self.pressure_offset = pressure_offset
        self.noise = noise
        self.unit = unit
        self.stuck: set[str] = set()
        self.muted: set[str] = set()
        self.response_delay = 0.0
        self.errors: list[str] = []
        self.history: list[str] = []
        self._polls_remaining = 0
        self._rng = np.random.default_rng(seed)

    @property
    def is_controlling(self) -> bool:
        return self.output_on and self.mode == "CONTROL"

    def setpoints(self) -> list[float]:
        """Every amplitude commanded so far, in order."""
        prefix = _key(cmds.SET_PRESSURE)
        return [
            float(c.split()[-1]) for c in self.history if _key(c).startswith(prefix)
        ]

    def handle(self, command: str) -> str | None:
        """Process one command line; return the reply line, if any."""
        text = command.strip()
        self.history.append(text)
        header, _, arg = text.partition(" ")
        key = header.upper()
        if cmds.expects_response(header):
            if key in {_key(m) for m in self.muted}:
                logger.trace("[SIM] muted query {}", text)
                return None
            return self._query(key)
        if key in {_key(s) for s in self.stuck}:
            logger.trace("[SIM] ignoring stuck command {}", text)
            return None
        try:
            self._write(key, arg.strip())
        except ValueError:
            self.errors.append(f'-224,"Illegal parameter value {arg}"')
        return None

    def _reading(self) -> float:
        value = self.pressure
        if self.noise:
            value += self._rng.normal(0.0, self.noise)
        return value

    def _query(self, key: str) -> str | None:
        match key:
            case "*IDN?":
                return SIM_IDENT
            case _ if key == _key(cmds.OUTPUT_STATE):
                return "1" if self.output_on else "0"
            case _ if key == _key(cmds.OUTPUT_MODE):
                return self.mode
            case _ if key == _key(cmds.STATIC_MODE):
                return "1" if self.static_mode else "0"
            case _ if key == _key(cmds.TOLERANCE):
                return f"{self.tolerance}"
            case _ if key in (_key(cmds.MEASURE_PRESSURE), _key(cmds.FETCH_PRESSURE)):
                return f"{self._reading():.4f}"
            case _ if key == _key(cmds.STATUS_OPERATION):
                return self._status()
            case _ if key == _key(cmds.STATUS_QUESTIONABLE):
                return "0"
            case _ if key == _key(cmds.SYSTEM_ERROR):
                return self.errors.pop(0) if self.errors else '0,"No error"'
            case _ if key == _key(cmds.PRESSURE_UNIT):
                return self.unit
            case _:
                self.errors.append(f'-113,"Undefined header {key}"')
                return None

    def _status(self) -> str:
        if not self.is_controlling:
            return "0"
        if self._polls_remaining > 0:
            self._polls_remaining -= 1
            return "0"
        self.pressure = self.target + self.pressure_offset
        return str(cmds.SETTLED_STATUS)

    def _write(self, key: str, arg: str) -> None:
        arg_upper = arg.upper()
        match key:
            case "*CLS":
                self.errors.clear()
            case _ if key == _key(cmds.OUTPUT_ON).split()[0]:
                self.output_on = arg_upper in ("ON", "1")
            case _ if key == _key(cmds.OUTPUT_MODE_CONTROL).split()[0]:
                if arg_upper.startswith("CONT"):
                    self.mode = "CONTROL"
                elif arg_upper.startswith("VENT"):
                    self.mode = "VENT"
                    self.target = self.pressure = 0.0
                elif arg_upper.startswith("MEAS"):
                    self.mode = "MEASURE"
                else:
                    self.errors.append(f'-224,"Illegal parameter value {arg}"')
            case _ if key == _key(cmds.STATIC_MODE_OFF).split()[0]:
                self.static_mode = arg_upper in ("ON", "1")
            case _ if key == _key(cmds.TOLERANCE_SET):
                self.tolerance = float(arg)
            case _ if key == _key(cmds.SET_PRESSURE):
                self.target = float(arg)
                self._polls_remaining = self.settle_polls
            case _ if key == "UNIT:PRESSURE":
                self.unit = arg_upper
            case _:
                self.errors.append(f'-113,"Undefined header {key}"')


class LoopbackLink(InstrumentLink):
    """InstrumentLink that talks to a `SimulatedCalibrator` in-process.

    Replies are delivered on the event loop like socket data, so queueing,
    timeouts and late-reply handling behave exactly as over TCP.
    """

    def __init__(
        self,
        calibrator: SimulatedCalibrator,
        response_timeout: float = DEFAULT_TIMEOUT,
        notif_queue: asyncio.Queue | None = None,
    ):
        super().__init__(
            host="simulated",
            port=0,
            response_timeout=response_timeout,
            auto_reconnect=False,
            notif_queue=notif_queue,
        )
        self.calibrator = calibrator
        self._connected = False
        # (due time, reply) in write order, delivered one after another
        self._replies: collections.deque[tuple[float, str]] = collections.deque()
        self._delivery_task: asyncio.Task | None = None

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        if not self._connected:
            self._connected = True
            self._on_connected()
        return True

    async def disconnect(self) -> None:
        self.auto_reconnect = False
        await self._cancel_task(self._delivery_task)
        self._delivery_task = None
        self._replies.clear()
        self._fail_pending(
            InstrumentNotConnectedError("Disconnected while awaiting a response")
        )
        if not self._connected:
            return
        self._connected = False
        logger.info("Disconnected from simulated instrument")
        self._notify(InstrumentDisconnected(host=self.host, port=self.port))

    async def _write(self, text: str) -> None:
        logger.trace("Sending: {}", text)
        response = self.calibrator.handle(text)
        if response is None:
            return
        due = asyncio.get_running_loop().time() + self.calibrator.response_delay
        self._replies.append((due, response))
        if self._delivery_task is None or self._delivery_task.done():
            self._delivery_task = asyncio.create_task(self._deliver())

    async def _deliver(self) -> None:
        loop = asyncio.get_running_loop()
        while self._replies:
            due, response = self._replies.popleft()
            await asyncio.sleep(max(due - loop.time(), 0))
            if self._connected:
                self._handle_line(response)


class SimulatedInstrument(InstrumentController):
    """Controller driving a `SimulatedCalibrator` instead of hardware."""

    def __init__(
        self,
        calibrator: SimulatedCalibrator | None = None,
        settings: InstrumentSettings | None = None,
        notif_queue: asyncio.Queue | None = None,
    ):
        self.calibrator = calibrator if calibrator is not None else SimulatedCalibrator()
        settings = settings if settings is not None else InstrumentSettings(simulated=True)
        link = LoopbackLink(
            self.calibrator,
            response_timeout=settings.response_timeout,
            notif_queue=notif_queue,
        )
        super().__init__(link, settings, notif_queue)

    @classmethod
    def from_settings(
        cls,
        settings: InstrumentSettings,
        notif_queue: asyncio.Queue | None = None,
        fast: bool = True,
    ) -> SimulatedInstrument:
        if fast:
            settings = dataclasses.replace(settings, **SIMULATED_TIMING)
        return cls(SimulatedCalibrator(), settings, notif_queue)
