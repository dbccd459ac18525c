"""Tests for InstrumentLink over TCP (against SimulatedInstrumentServer)"""

import asyncio

import pytest
import pytest_asyncio
from loguru import logger

import pressurecal.util
from pressurecal.device import InstrumentLink, reconnect_delay
from pressurecal.device import commands as cmds
from pressurecal.device.mock import SIM_IDENT, SimulatedInstrumentServer
from pressurecal.types import (
    InstrumentBusyError,
    InstrumentConnected,
    InstrumentConnectionError,
    InstrumentDisconnected,
    InstrumentError,
    InstrumentNotConnectedError,
    InstrumentReconnecting,
    drain_notifications,
    wait_for_notification,
)
from pressurecal.util import TEST_LOGLEVEL


async def wait_for_fatal_error(queue: asyncio.Queue, timeout: float = 5.0):
    async def _wait():
        while True:
            notif = await wait_for_notification(queue, InstrumentError, timeout)
            if notif.fatal:
                return notif

    return await asyncio.wait_for(_wait(), timeout)


class TestInstrumentLink:
    @pytest.fixture(autouse=True, scope="class")
    def client_log(self):
        pressurecal.util.start_log(
            log_level=TEST_LOGLEVEL, log_to_stdout=True, log_to_file=True
        )
        yield
        pressurecal.util.shutdown_log()

    @pytest.fixture(autouse=True)
    def log(self, request):
        logger.warning("STARTED Test '{}'".format(request.node.originalname))

        def fin():
            logger.warning("COMPLETED Test '{}' \n".format(request.node.originalname))

        request.addfinalizer(fin)

    @pytest.fixture
    def queue(self):
        return asyncio.Queue()

    @pytest_asyncio.fixture
    async def link(self, instrument_server: SimulatedInstrumentServer, queue):
        link = InstrumentLink(
            "127.0.0.1",
            instrument_server.port,
            response_timeout=1.0,
            connect_timeout=1.0,
            close_timeout=0.5,
            max_reconnect_attempts=2,
            reconnect_base_delay=0.01,
            reconnect_max_delay=0.05,
            notif_queue=queue,
        )
        yield link
        await link.disconnect()

    def test_required_config(self):
        with pytest.raises(ValueError):
            InstrumentLink("127.0.0.1", "3490")

    @pytest.mark.asyncio
    async def test_connect_and_identify(self, link: InstrumentLink, queue):
        assert await link.connect()
        assert link.is_connected()
        notif = await wait_for_notification(queue, InstrumentConnected, 1.0)
        assert notif.port == link.port
        assert await link.identify() == SIM_IDENT

    @pytest.mark.asyncio
    async def test_fire_and_forget(self, link: InstrumentLink, instrument_server):
        await link.connect()
        assert await link.send(cmds.OUTPUT_ON) is None
        assert await link.send(cmds.OUTPUT_STATE) == "1"
        assert instrument_server.calibrator.output_on

    @pytest.mark.asyncio
    async def test_concurrent_sends_are_fifo(
        self, link: InstrumentLink, instrument_server
    ):
        await link.connect()
        commands = [
            [cmds.IDENTIFY, cmds.OUTPUT_STATE, cmds.PRESSURE_UNIT, cmds.OUTPUT_MODE][
                i % 4
            ]
            for i in range(20)
        ]
        expected = {
            cmds.IDENTIFY: SIM_IDENT,
            cmds.OUTPUT_STATE: "0",
            cmds.PRESSURE_UNIT: "PSI",
            cmds.OUTPUT_MODE: "MEASURE",
        }
        replies = await asyncio.gather(*(link.send(c) for c in commands))
        assert replies == [expected[c] for c in commands]
        # the instrument saw them in submission order, one at a time
        assert instrument_server.calibrator.history == commands

    @pytest.mark.asyncio
    async def test_timeout_raises_busy_and_late_reply_is_discarded(
        self, link: InstrumentLink, instrument_server
    ):
        await link.connect()
        instrument_server.calibrator.response_delay = 0.3
        with pytest.raises(InstrumentBusyError, match="busy"):
            await link.send(cmds.IDENTIFY, timeout=0.05)

        instrument_server.calibrator.response_delay = 0.0
        # the late identity reply arrives first and must not be taken for this one
        assert await link.send(cmds.OUTPUT_STATE, timeout=2.0) == "0"
        assert await link.send(cmds.PRESSURE_UNIT) == "PSI"

    @pytest.mark.asyncio
    async def test_unanswered_query_does_not_desync_link(
        self, link: InstrumentLink, instrument_server
    ):
        await link.connect()
        calibrator = instrument_server.calibrator
        calibrator.muted = {cmds.PRESSURE_UNIT}
        with pytest.raises(InstrumentBusyError):
            await link.send(cmds.PRESSURE_UNIT, timeout=0.2)
        calibrator.muted = set()

        outcomes = [await link.identify() for _ in range(4)]
        assert outcomes == [SIM_IDENT] * 4
        assert await link.send(cmds.PRESSURE_UNIT) == "PSI"
        # one resync, straight after the timeout
        assert calibrator.history.count(cmds.CLEAR_STATUS) == 1

    @pytest.mark.asyncio
    async def test_resync_that_times_out_is_retried(
        self, link: InstrumentLink, instrument_server
    ):
        await link.connect()
        calibrator = instrument_server.calibrator
        calibrator.response_delay = 0.3
        with pytest.raises(InstrumentBusyError):
            await link.send(cmds.IDENTIFY, timeout=0.05)
        # the resync queues behind the slow reply and times out as well
        with pytest.raises(InstrumentBusyError):
            await link.send(cmds.OUTPUT_STATE, timeout=0.05)

        calibrator.response_delay = 0.0
        assert await link.send(cmds.OUTPUT_STATE, timeout=2.0) == "0"
        assert await link.send(cmds.PRESSURE_UNIT) == "PSI"
        assert calibrator.history.count(cmds.CLEAR_STATUS) == 2

    @pytest.mark.asyncio
    async def test_send_when_not_connected(self, link: InstrumentLink):
        with pytest.raises(InstrumentNotConnectedError):
            await link.send(cmds.IDENTIFY)
        assert not await link.check_responsiveness(0.1)

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, link: InstrumentLink, queue):
        await link.connect()
        await link.disconnect()
        await link.disconnect()
        assert not link.is_connected()
        notif = await wait_for_notification(queue, InstrumentDisconnected, 1.0)
        assert notif.expected

    @pytest.mark.asyncio
    async def test_connect_refused(self, queue):
        server = SimulatedInstrumentServer()
        port = await server.start()
        await server.stop()

        link = InstrumentLink("127.0.0.1", port, connect_timeout=1.0, notif_queue=queue)
        with pytest.raises(InstrumentConnectionError):
            await link.connect()
        assert not link.is_connected()
        notif = await wait_for_notification(queue, InstrumentError, 1.0)
        assert not notif.fatal

    @pytest.mark.asyncio
    async def test_reconnects_after_drop(
        self, link: InstrumentLink, instrument_server, queue
    ):
        await link.connect()
        drain_notifications(queue)
        instrument_server.drop_clients()

        lost = await wait_for_notification(queue, InstrumentDisconnected, 2.0)
        assert not lost.expected
        notif = await wait_for_notification(queue, InstrumentReconnecting, 2.0)
        assert notif.attempt == 1
        assert notif.delay == pytest.approx(reconnect_delay(1, 0.01, 0.05))
        await wait_for_notification(queue, InstrumentConnected, 2.0)

        assert link.is_connected()
        assert link.status().reconnect_attempts == 0
        assert await link.identify() == SIM_IDENT
        assert instrument_server.connection_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(
        self, link: InstrumentLink, instrument_server, queue
    ):
        await link.connect()
        drain_notifications(queue)
        await instrument_server.stop()

        fatal = await wait_for_fatal_error(queue)
        assert "Gave up" in fatal.message
        assert not link.auto_reconnect
        with pytest.raises(InstrumentConnectionError, match="Gave up"):
            await link.send(cmds.IDENTIFY)

    @pytest.mark.asyncio
    async def test_update_settings_reconnects(self, link: InstrumentLink, queue):
        await link.connect()
        other = SimulatedInstrumentServer()
        port = await other.start()
        try:
            await link.update_settings("127.0.0.1", port)
            assert link.is_connected()
            assert link.port == port
            assert await link.identify() == SIM_IDENT
            assert other.connection_count == 1
        finally:
            await link.disconnect()
            await other.stop()


def test_reconnect_delay_backoff():
    assert [reconnect_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]
    assert reconnect_delay(4) == 10.0
    assert reconnect_delay(10) == 10.0
    assert reconnect_delay(1, base=0.5, max_delay=60) == 1.0
