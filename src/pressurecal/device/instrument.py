"""Reference instrument control on top of an `InstrumentLink`.

Every setting the calibration depends on is handled with the same pattern:
check it, enforce it if wrong, then check it again. Pressure setpoints are
verified by measurement once the instrument reports it has settled.

Zero pressure has its own path (`set_zero_pressure`). "At zero" means the
measured pressure is below the instrument tolerance, which is tighter than
the tolerance accepted for ordinary setpoints.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from pressurecal.device import commands as cmds
from pressurecal.device.device import Device
from pressurecal.device.instrument_link import InstrumentLink, LinkStatus
from pressurecal.types.config import InstrumentSettings
from pressurecal.types.errors import (
    CalibrationError,
    InstrumentResponseError,
    InstrumentTimeoutError,
    OperationCancelledError,
    PrerequisiteError,
    PressureSetError,
)
from pressurecal.types.protocols import IsActive


def _always_active() -> bool:
    return True


class InstrumentController(Device):
    """Command vocabulary & verification logic for the pressure reference.

    Parameters
    ----------
    link : InstrumentLink
        Transport. The controller owns it from here on.
    settings : InstrumentSettings
        Timing & tolerances (link parameters are ignored here, they belong to
        the link).
    notif_queue : asyncio.Queue, optional
        Shared with the link if the link has none.
    """

    def __init__(
        self,
        link: InstrumentLink,
        settings: InstrumentSettings | None = None,
        notif_queue: asyncio.Queue | None = None,
    ):
        super().__init__(notif_queue=notif_queue)
        self.link = link
        if link.notif_queue is None:
            link.notif_queue = notif_queue
        self.settings = settings if settings is not None else InstrumentSettings()
        self.prerequisites = cmds.prerequisite_checks(
            self.settings.instrument_tolerance
        )

    def __repr__(self):
        return f"{self.__class__.__name__}({self.link.host}:{self.link.port})"

    # ----------------------------------------------------------------------------------
    # connection
    # ----------------------------------------------------------------------------------

    async def connect(self) -> bool:
        if self.link.is_connected():
            logger.info("{} already connected.", self)
            return True
        return await self.link.connect()

    async def disconnect(self) -> None:
        await self.link.disconnect()

    def is_connected(self) -> bool:
        return self.link.is_connected()

    def status(self) -> LinkStatus:
        return self.link.status()

    async def identify(self) -> str | None:
        return await self.link.identify()

    async def check_responsiveness(self) -> bool:
        return await self.link.check_responsiveness(self.settings.response_timeout)

    # ----------------------------------------------------------------------------------
    # prerequisites
    # ----------------------------------------------------------------------------------

    async def run_prerequisites(self, is_active: IsActive | None = None) -> None:
        """Check, enforce & re-check every prerequisite setting, in order.

        Returns early (without error) as soon as `is_active()` is False.

        Raises
        ------
        PrerequisiteError
            A setting still reads wrong after being enforced. Not retried.
        """
        is_active = is_active or _always_active
        for check in self.prerequisites:
            if not is_active():
                logger.info("Prerequisites interrupted before '{}'.", check.name)
                return
            await asyncio.sleep(self.settings.command_delay)
            if not is_active():
                return

            logger.info("Checking {}...", check.name)
            response = await self.link.send(check.check_command)
            logger.debug("{} reads {!r}", check.name, response)
            if check.validate(response):
                logger.info("{} already set correctly.", check.name)
                continue

            if not is_active():
                return
            logger.info(
                "{} is {!r}, setting to {}...", check.name, response, check.expected_value
            )
            await self.link.send(check.enforce_command)
            await asyncio.sleep(self.settings.enforce_settle_delay)
            if not is_active():
                return

            verification = await self.link.send(check.check_command)
            if not check.validate(verification):
                err = PrerequisiteError(
                    name=check.name,
                    command=check.check_command,
                    expected=check.expected_value,
                    observed=verification,
                )
                logger.error(str(err))
                raise err
            logger.info("{} set and verified.", check.name)
        logger.info("All instrument prerequisites satisfied.")

    # ----------------------------------------------------------------------------------
    # readings
    # ----------------------------------------------------------------------------------

    async def _query_float(self, command: str) -> float:
        response = await self.link.send(command)
        value = cmds.parse_float(response)
        if value is None:
            raise InstrumentResponseError(command, response)
        return value

    async def read_pressure(self) -> float:
        return await self._query_float(cmds.MEASURE_PRESSURE)

    async def read_status(self) -> int:
        return int(await self._query_float(cmds.STATUS_OPERATION))

    async def check_zero_pressure(self) -> bool:
        pressure = await self.read_pressure()
        at_zero = pressure < self.settings.instrument_tolerance
        logger.info(
            "Current pressure {} ({}at zero)", pressure, "" if at_zero else "not "
        )
        return at_zero

    # ----------------------------------------------------------------------------------
    # pressure control
    # ----------------------------------------------------------------------------------

    async def wait_for_settle(
        self, description: str = "", is_active: IsActive | None = None
    ) -> None:
        """Poll the operation status register until it reads settled.

        Each tick samples `is_active()`, then issues one status read. There is
        no overall timeout. A status read that times out counts as
        not-settled-yet.

        Raises
        ------
        OperationCancelledError
            `is_active()` went False while waiting.
        """
        is_active = is_active or _always_active
        logger.debug("Waiting for instrument to settle {}", description)
        polls = 0
        while True:
            if not is_active():
                logger.info("Settle wait cancelled {}", description)
                raise OperationCancelledError(f"Cancelled while settling {description}")
            polls += 1
            try:
                status = await self.read_status()
            except InstrumentTimeoutError:
                logger.warning("Status poll timed out, instrument busy. Retrying.")
                status = None
            if status == cmds.SETTLED_STATUS:
                logger.info("Instrument settled {} after {} polls", description, polls)
                return
            await asyncio.sleep(self.settings.poll_interval)

    async def set_pressure(
        self,
        target: float,
        verify: bool = True,
        tolerance: float | None = None,
        is_active: IsActive | None = None,
    ) -> float | None:
        """Command `target`, wait for settle, and (optionally) verify it.

        A target of zero goes through `set_zero_pressure`.

        Returns
        -------
        float | None
            The measured pressure if verified.

        Raises
        ------
        PressureSetError
            |measured - target| exceeded `tolerance`.
        OperationCancelledError
            Cancelled during the settle wait.
        """
        if target == 0:
            return await self.set_zero_pressure(verify=verify, is_active=is_active)
        tolerance = self.settings.pressure_tolerance if tolerance is None else tolerance

        logger.info("Setting pressure to {}", target)
        await self.link.send(cmds.set_pressure_command(target))
        await self.wait_for_settle(f"at {target}", is_active)
        if not verify:
            return None

        measured = await self.read_pressure()
        difference = abs(measured - target)
        if difference > tolerance:
            err = PressureSetError(
                expected=target, measured=measured, difference=difference
            )
            logger.error(str(err))
            raise err
        logger.info("Pressure set to {} and verified ({})", target, measured)
        return measured

    async def set_zero_pressure(
        self, verify: bool = True, is_active: IsActive | None = None
    ) -> float | None:
        logger.info("Setting pressure to 0")
        await self.link.send(cmds.set_pressure_command(0))
        await self.wait_for_settle("at zero", is_active)
        if not verify:
            return None

        measured = await self.read_pressure()
        if measured >= self.settings.instrument_tolerance:
            err = PressureSetError(expected=0.0, measured=measured, difference=measured)
            logger.error(str(err))
            raise err
        logger.info("Pressure set to 0 and verified ({})", measured)
        return measured

    async def ensure_zero_pressure(self, is_active: IsActive | None = None) -> None:
        if not await self.check_zero_pressure():
            await self.set_zero_pressure(verify=True, is_active=is_active)

    async def return_to_zero(self) -> None:
        """Best-effort zero command without waiting, for teardown."""
        if not self.is_connected():
            return
        try:
            await self.link.send(cmds.set_pressure_command(0))
        except CalibrationError as e:
            logger.warning("Could not return instrument to zero: {}", e)

    async def vent(self) -> None:
        """Vent & switch the output off (end-of-day shutdown)."""
        for command in cmds.SHUTDOWN_SEQUENCE:
            await self.link.send(command)
        logger.info("{} vented and output off.", self)


class RealInstrument(InstrumentController):
    """Controller talking to hardware over TCP."""

    @classmethod
    def from_settings(
        cls, settings: InstrumentSettings, notif_queue: asyncio.Queue | None = None
    ) -> RealInstrument:
        link = InstrumentLink.from_settings(settings, notif_queue)
        return cls(link, settings, notif_queue)
