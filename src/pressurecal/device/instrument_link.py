"""Line-oriented TCP link to the pressure reference instrument.

One command is in flight at a time. Callers of `InstrumentLink.send` queue
behind an `asyncio.Lock` (which wakes waiters in FIFO order), so replies are
matched to callers strictly in order. Each query registers a one-shot future
that a single reader task resolves; `asyncio.wait_for` races it against the
response timeout and the future is always unregistered afterwards.

A query that times out may or may not be answered later, so after a timeout
the link resynchronises before the next command: it sends ``*CLS`` then
``SYSTem:ERRor?`` and discards every line up to the empty-error-queue reply.
A late reply is therefore never handed to a later caller, and a reply that
never comes costs one resync rather than every later query.

If the connection drops unexpectedly and auto reconnect is on, reconnection
is attempted with exponential backoff, ``min(base * 2**attempt, max)``
seconds before attempt ``attempt`` (1-based), up to `max_reconnect_attempts`.
After that the link gives up: auto reconnect is switched off and the next
`send` raises the stored `InstrumentConnectionError`.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass

from loguru import logger
from mashumaro import DataClassDictMixin

from pressurecal.device.commands import (
    CLEAR_STATUS,
    IDENTIFY,
    SYSTEM_ERROR,
    Command,
    is_no_error,
)
from pressurecal.device.device import Device
from pressurecal.types.config import InstrumentSettings
from pressurecal.types.errors import (
    CalibrationError,
    InstrumentBusyError,
    InstrumentConnectionError,
    InstrumentNotConnectedError,
)
from pressurecal.types.messages import (
    CommandSent,
    InstrumentConnected,
    InstrumentDisconnected,
    InstrumentError,
    InstrumentReconnecting,
    ResponseReceived,
)
from pressurecal.util.defaults import (
    DEFAULT_CLOSE_TIMEOUT,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_RECONNECT_ATTEMPTS,
    DEFAULT_RECONNECT_BASE_DELAY,
    DEFAULT_RECONNECT_MAX_DELAY,
    DEFAULT_TIMEOUT,
)

LINE_TERMINATOR = "\n"


@dataclass(frozen=True)
class LinkStatus(DataClassDictMixin):
    host: str
    port: int
    connected: bool
    auto_reconnect: bool
    reconnect_attempts: int
    max_reconnect_attempts: int


def reconnect_delay(
    attempt: int,
    base: float = DEFAULT_RECONNECT_BASE_DELAY,
    max_delay: float = DEFAULT_RECONNECT_MAX_DELAY,
) -> float:
    """Seconds to wait before reconnect attempt number `attempt` (1-based)."""
    return min(base * 2**attempt, max_delay)


class InstrumentLink(Device):
    required_config = {"host": str, "port": int}

    def __init__(
        self,
        host: str,
        port: int,
        response_timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
        auto_reconnect: bool = True,
        max_reconnect_attempts: int = DEFAULT_RECONNECT_ATTEMPTS,
        reconnect_base_delay: float = DEFAULT_RECONNECT_BASE_DELAY,
        reconnect_max_delay: float = DEFAULT_RECONNECT_MAX_DELAY,
        notif_queue: asyncio.Queue | None = None,
    ):
        super().__init__(notif_queue=notif_queue, host=host, port=port)
        self.response_timeout = response_timeout
        self.connect_timeout = connect_timeout
        self.close_timeout = close_timeout
        self.auto_reconnect = auto_reconnect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay

        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()
        self._pending: asyncio.Future | None = None
        self._needs_resync = False
        self._draining = False
        # resync queries whose reply has not been seen yet
        self._sentinels_owed = 0
        self._reconnect_attempts = 0
        self._terminal_error: InstrumentConnectionError | None = None

    @classmethod
    def from_settings(
        cls, settings: InstrumentSettings, notif_queue: asyncio.Queue | None = None
    ) -> InstrumentLink:
        return cls(
            host=settings.host,
            port=settings.port,
            response_timeout=settings.response_timeout,
            connect_timeout=settings.connect_timeout,
            close_timeout=settings.close_timeout,
            auto_reconnect=settings.auto_reconnect,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            reconnect_base_delay=settings.reconnect_base_delay,
            reconnect_max_delay=settings.reconnect_max_delay,
            notif_queue=notif_queue,
        )

    # ----------------------------------------------------------------------------------
    # connection
    # ----------------------------------------------------------------------------------

    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> bool:
        if self.is_connected():
            return True
        logger.info("Connecting to instrument at {}:{}", self.host, self.port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.connect_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            msg = f"Could not connect to instrument at {self.host}:{self.port}: {e!r}"
            logger.error(msg)
            self._notify(InstrumentError(message=msg))
            raise InstrumentConnectionError(msg) from e

        self._reader, self._writer = reader, writer
        self._on_connected()
        self._read_task = asyncio.create_task(self._read_loop(reader))
        return True

    def _on_connected(self) -> None:
        self._needs_resync = False
        self._sentinels_owed = 0
        self._reconnect_attempts = 0
        self._terminal_error = None
        logger.info("Connected to instrument at {}:{}", self.host, self.port)
        self._notify(InstrumentConnected(host=self.host, port=self.port))

    async def disconnect(self) -> None:
        """Close the session. Safe to call at any time, any number of times."""
        self.auto_reconnect = False
        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        await self._cancel_task(self._read_task)
        self._read_task = None
        self._fail_pending(
            InstrumentNotConnectedError("Disconnected while awaiting a response")
        )

        writer = self._writer
        self._reader = self._writer = None
        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), self.close_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("Instrument socket did not close cleanly: {!r}", e)
        logger.info("Disconnected from instrument at {}:{}", self.host, self.port)
        self._notify(InstrumentDisconnected(host=self.host, port=self.port))

    @staticmethod
    async def _cancel_task(task: asyncio.Task | None) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def set_auto_reconnect(self, enabled: bool) -> None:
        self.auto_reconnect = enabled
        self._reconnect_attempts = 0
        logger.debug("Instrument auto reconnect {}", "on" if enabled else "off")

    async def update_settings(self, host: str, port: int) -> None:
        """Point the link at a new address, reconnecting if it was connected."""
        if host == self.host and port == self.port:
            return
        was_connected = self.is_connected()
        auto_reconnect = self.auto_reconnect
        await self.disconnect()
        self.host, self.port = host, port
        self.auto_reconnect = auto_reconnect
        logger.info("Instrument address changed to {}:{}", host, port)
        if was_connected:
            await self.connect()

    def status(self) -> LinkStatus:
        return LinkStatus(
            host=self.host,
            port=self.port,
            connected=self.is_connected(),
            auto_reconnect=self.auto_reconnect,
            reconnect_attempts=self._reconnect_attempts,
            max_reconnect_attempts=self.max_reconnect_attempts,
        )

    # ----------------------------------------------------------------------------------
    # commands
    # ----------------------------------------------------------------------------------

    async def send(self, command: str, timeout: float | None = None) -> str | None:
        """Send one command.

        Returns
        -------
        str | None
            The reply line for queries, None for fire-and-forget commands.

        Raises
        ------
        InstrumentBusyError
            No reply within `timeout` (default `response_timeout`) seconds.
        InstrumentConnectionError
            Not connected, or the connection dropped mid-command.
        """
        cmd = Command.parse(command)
        timeout = self.response_timeout if timeout is None else timeout
        async with self._send_lock:
            if not self.is_connected():
                if self._terminal_error is not None:
                    raise self._terminal_error
                raise InstrumentNotConnectedError()
            if self._needs_resync:
                await self._resync(timeout)

            if not cmd.expects_response:
                await self._write(cmd.text)
                self._notify(CommandSent(command=cmd.text))
                return None

            fut = asyncio.get_running_loop().create_future()
            self._pending = fut
            try:
                await self._write(cmd.text)
                self._notify(CommandSent(command=cmd.text))
                try:
                    response = await asyncio.wait_for(fut, timeout)
                except asyncio.TimeoutError:
                    self._needs_resync = True
                    logger.warning(
                        "No response to '{}' within {}s (instrument busy)",
                        cmd.text,
                        timeout,
                    )
                    raise InstrumentBusyError(cmd.text, timeout) from None
            finally:
                self._pending = None

        logger.trace("{} -> {!r}", cmd.text, response)
        self._notify(ResponseReceived(command=cmd.text, response=response))
        return response

    async def _resync(self, timeout: float) -> None:
        """Discard replies owed to timed-out queries. Caller holds the send lock.

        Raises
        ------
        InstrumentBusyError
            The resync query itself went unanswered; the next send retries.
        """
        logger.info("Resynchronising with instrument after a timed-out query")
        fut = asyncio.get_running_loop().create_future()
        self._pending = fut
        self._draining = True
        self._sentinels_owed += 1
        try:
            await self._write(CLEAR_STATUS)
            await self._write(SYSTEM_ERROR)
            try:
                await asyncio.wait_for(fut, timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "Instrument still busy after {}s, resync pending", timeout
                )
                raise InstrumentBusyError(SYSTEM_ERROR, timeout) from None
        finally:
            self._pending = None
            self._draining = False
        self._needs_resync = False
        logger.debug("Instrument link resynchronised")

    async def identify(self) -> str | None:
        return await self.send(IDENTIFY)

    async def check_responsiveness(self, timeout: float | None = None) -> bool:
        """True iff the instrument answers an identity query in time."""
        try:
            response = await self.send(IDENTIFY, timeout=timeout)
        except CalibrationError as e:
            logger.warning("Instrument not responsive: {}", e)
            return False
        return bool(response)

    async def _write(self, text: str) -> None:
        logger.trace("Sending: {}", text)
        try:
            self._writer.write((text + LINE_TERMINATOR).encode("ascii"))
            await self._writer.drain()
        except (OSError, RuntimeError) as e:
            raise InstrumentConnectionError(f"Failed to send '{text}': {e!r}") from e

    # ----------------------------------------------------------------------------------
    # responses & connection loss
    # ----------------------------------------------------------------------------------

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        error = None
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break  # EOF
                text = line.decode("ascii", errors="replace").strip()
                if not text:
                    continue
                self._handle_line(text)
        except (OSError, ValueError) as e:
            error = e
        self._on_connection_lost(error)

    def _handle_line(self, text: str) -> None:
        fut = self._pending
        if self._sentinels_owed > 0 and is_no_error(text):
            self._sentinels_owed -= 1
            if self._draining and self._sentinels_owed == 0 and not fut.done():
                fut.set_result(text)
            else:
                logger.debug("Discarding reply to an earlier resync: {!r}", text)
            return
        if self._draining:
            logger.warning("Discarding late response from instrument: {!r}", text)
            return
        if fut is None or fut.done():
            logger.warning("Discarding unsolicited response from instrument: {!r}", text)
            return
        fut.set_result(text)

    def _fail_pending(self, exc: Exception) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(exc)

    def _on_connection_lost(self, error: Exception | None) -> None:
        self._read_task = None
        writer = self._writer
        self._reader = self._writer = None
        if writer is not None:
            writer.close()

        msg = f"Connection to instrument at {self.host}:{self.port} lost"
        if error is not None:
            msg += f": {error!r}"
        logger.warning(msg)
        self._fail_pending(InstrumentConnectionError(msg))
        self._notify(
            InstrumentDisconnected(host=self.host, port=self.port, expected=False)
        )
        if self.auto_reconnect:
            self._start_reconnect()

    def _start_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while self.auto_reconnect and not self.is_connected():
            if self._reconnect_attempts >= self.max_reconnect_attempts:
                msg = (
                    f"Gave up reconnecting to instrument at {self.host}:{self.port} "
                    + f"after {self._reconnect_attempts} attempts"
                )
                logger.error(msg)
                self._terminal_error = InstrumentConnectionError(msg)
                self.auto_reconnect = False
                self._notify(InstrumentError(message=msg, fatal=True))
                return

            self._reconnect_attempts += 1
            attempt = self._reconnect_attempts
            delay = reconnect_delay(
                attempt, self.reconnect_base_delay, self.reconnect_max_delay
            )
            logger.info(
                "Reconnecting to instrument in {}s (attempt {}/{})",
                delay,
                attempt,
                self.max_reconnect_attempts,
            )
            self._notify(
                InstrumentReconnecting(
                    attempt=attempt,
                    max_attempts=self.max_reconnect_attempts,
                    delay=delay,
                )
            )
            await asyncio.sleep(delay)
            if not self.auto_reconnect:
                return
            try:
                await self.connect()
            except InstrumentConnectionError as e:
                logger.warning("Reconnect attempt {} failed: {}", attempt, e)
