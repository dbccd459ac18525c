"""Tests for PeripheralConnectionManager (against MockPeripheralBackend)"""

import asyncio

import pytest
from loguru import logger

import pressurecal.util
from pressurecal.device.mock import MockPeripheral, MockPeripheralBackend
from pressurecal.device.mock.mock_peripheral import encode_pressure
from pressurecal.device.peripheral import (
    FIRMWARE_REVISION_CHARACTERISTIC_UUID,
    DeviceRegistry,
    PeripheralConnectionManager,
    calibration_payload,
    parse_pressure_data,
    signal_strength,
)
from pressurecal.types import (
    AllDevicesDisconnected,
    CalibrationPointWritten,
    CalibrationWriteError,
    ConnectionsComplete,
    DeviceConnectionFailed,
    DeviceConnectionRetry,
    DeviceConnectionStarted,
    DeviceConnectionSucceeded,
    DeviceDisconnected,
    PeripheralDevice,
    PeripheralState,
    drain_notifications,
)
from pressurecal.util import TEST_LOGLEVEL


class TestPeripheralConnectionManager:
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
    def backend(self):
        return MockPeripheralBackend(
            [
                MockPeripheral(id="A", name="Sensor A", firmware="2.1.0"),
                MockPeripheral(id="B", name="Sensor B", fail_attempts=2),
                MockPeripheral(id="C", name="Sensor C", display_name="Bench C"),
            ],
            reference=lambda: 42.0,
        )

    @pytest.fixture
    def queue(self):
        return asyncio.Queue()

    @pytest.fixture
    def manager(self, backend, fast_peripheral_settings, queue):
        return PeripheralConnectionManager(
            backend, fast_peripheral_settings, notif_queue=queue
        )

    def test_rejects_non_backend(self):
        with pytest.raises(TypeError):
            PeripheralConnectionManager(object())

    @pytest.mark.asyncio
    async def test_sequential_order_with_retries(self, manager, backend, queue):
        results = await manager.connect_sequential(
            ["A", "B", "C"], backend.discovery_map()
        )

        assert backend.attempt_log == ["A", "B", "B", "B", "C"]
        assert results.successful_ids == ["A", "B", "C"]
        assert results.all_connected

        notifs = [
            n
            for n in drain_notifications(queue)
            if not isinstance(n, ConnectionsComplete)
        ]
        kinds = [(type(n).__name__, n.device_id) for n in notifs]
        assert kinds == [
            ("DeviceConnectionStarted", "A"),
            ("DeviceConnectionSucceeded", "A"),
            ("DeviceConnectionStarted", "B"),
            ("DeviceConnectionRetry", "B"),
            ("DeviceConnectionRetry", "B"),
            ("DeviceConnectionSucceeded", "B"),
            ("DeviceConnectionStarted", "C"),
            ("DeviceConnectionSucceeded", "C"),
        ]
        retries = [n for n in notifs if isinstance(n, DeviceConnectionRetry)]
        assert [r.attempt for r in retries] == [2, 3]
        succeeded_b = [
            n
            for n in notifs
            if isinstance(n, DeviceConnectionSucceeded) and n.device_id == "B"
        ]
        assert succeeded_b[0].attempts == 3
        started = [n for n in notifs if isinstance(n, DeviceConnectionStarted)]
        assert [(s.index, s.total) for s in started] == [(0, 3), (1, 3), (2, 3)]

    @pytest.mark.asyncio
    async def test_connections_never_overlap(self, fast_peripheral_settings):
        in_flight = 0
        max_in_flight = 0

        class CountingBackend(MockPeripheralBackend):
            async def connect(self, device_id, address):
                nonlocal in_flight, max_in_flight
                in_flight += 1
                max_in_flight = max(max_in_flight, in_flight)
                try:
                    await asyncio.sleep(0.01)
                    await super().connect(device_id, address)
                finally:
                    in_flight -= 1

        backend = CountingBackend(
            [MockPeripheral(id=f"P{i}", name=f"P{i}", fail_attempts=i % 2) for i in range(4)]
        )
        manager = PeripheralConnectionManager(backend, fast_peripheral_settings)
        results = await manager.connect_sequential(
            [f"P{i}" for i in range(4)], backend.discovery_map()
        )
        assert results.all_connected
        assert max_in_flight == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_do_not_block_others(
        self, manager, backend, queue
    ):
        backend.peripherals["B"].fail_attempts = -1
        results = await manager.connect_sequential(
            ["A", "B", "C"], backend.discovery_map()
        )

        assert results.successful_ids == ["A", "C"]
        assert results.any_connected and not results.all_connected
        (failed,) = results.failed
        assert failed.id == "B"
        assert failed.name == "Sensor B"
        assert failed.attempts == 3
        assert "did not respond" in failed.reason
        # every failed attempt is cleaned up
        assert backend.disconnect_log.count("B") == 3
        assert not manager.registry.is_connecting("B")
        assert manager.get_device("B").connection_state == PeripheralState.FAILED

        failures = [
            n for n in drain_notifications(queue) if isinstance(n, DeviceConnectionFailed)
        ]
        assert [(f.device_id, f.attempts) for f in failures] == [("B", 3)]

    @pytest.mark.asyncio
    async def test_missing_device_info(self, manager, backend):
        results = await manager.connect_sequential(["A", "X"], backend.discovery_map())
        assert results.successful_ids == ["A"]
        (failed,) = results.failed
        assert (failed.id, failed.name, failed.reason) == (
            "X",
            "Unknown",
            "Device info not found",
        )
        assert backend.attempt_log == ["A"]

    @pytest.mark.asyncio
    async def test_callable_device_info(self, manager, backend):
        lookup = backend.discovery_map()
        results = await manager.connect_sequential(["C"], lambda dev_id: lookup.get(dev_id))
        assert results.successful_ids == ["C"]

    @pytest.mark.asyncio
    async def test_cancelled_batch(self, manager, backend):
        calls = 0

        def is_active():
            nonlocal calls
            calls += 1
            return calls == 1

        results = await manager.connect_sequential(
            ["A", "B", "C"], backend.discovery_map(), is_active
        )
        assert backend.attempt_log == ["A"]
        assert results.successful_ids == ["A"]
        assert [(f.id, f.reason) for f in results.failed] == [
            ("B", "Connection cancelled"),
            ("C", "Connection cancelled"),
        ]

    @pytest.mark.asyncio
    async def test_connection_timeout(self, backend, fast_peripheral_settings):
        backend.connect_delay = 0.5
        fast_peripheral_settings.connection_timeout = 0.05
        fast_peripheral_settings.max_retries = 1
        manager = PeripheralConnectionManager(backend, fast_peripheral_settings)
        results = await manager.connect_sequential(["A"], backend.discovery_map())
        (failed,) = results.failed
        assert "timed out" in failed.reason
        assert failed.attempts == 1

    @pytest.mark.asyncio
    async def test_details_gathered_on_connect(self, manager, backend):
        await manager.connect_sequential(["A", "C"], backend.discovery_map())
        a = manager.get_device("A")
        c = manager.get_device("C")
        assert a.firmware_version == "2.1.0"
        assert a.display_name == "Sensor A"
        assert c.display_name == "Bench C"
        assert a.connection_state == PeripheralState.CONNECTED
        assert a.connected_at is not None

    @pytest.mark.asyncio
    async def test_details_default_when_unreadable(self, manager, backend):
        backend.peripherals["A"].firmware = ""
        await manager.connect_sequential(["A"], backend.discovery_map())
        assert manager.get_device("A").firmware_version == "Unknown"

    @pytest.mark.asyncio
    async def test_already_connected_is_not_reattempted(self, manager, backend):
        info = backend.discovery_map()["A"]
        first = await manager.connect_device(info)
        second = await manager.connect_device(info)
        assert first.id == second.id
        assert backend.attempt_log == ["A"]

    @pytest.mark.asyncio
    async def test_stale_backend_connection_released(self, manager, backend):
        backend.peripherals["A"].connected = True
        await manager.connect_device(backend.discovery_map()["A"])
        assert backend.disconnect_log == ["A"]
        assert manager.registry.is_connected("A")

    @pytest.mark.asyncio
    async def test_snapshots_are_copies(self, manager, backend):
        device = await manager.connect_device(backend.discovery_map()["A"])
        device.display_name = "changed"
        assert manager.get_device("A").display_name == "Sensor A"
        manager.connected_devices()[0].firmware_version = "changed"
        assert manager.get_device("A").firmware_version == "2.1.0"

    @pytest.mark.asyncio
    async def test_read_pressure(self, manager, backend):
        backend.peripherals["C"].pressure_offset = 0.3
        await manager.connect_sequential(["C"], backend.discovery_map())
        assert await manager.read_pressure("C") == pytest.approx(42.3)
        assert await manager.read_pressure("A") is None

    @pytest.mark.asyncio
    async def test_disconnect_all_is_idempotent(self, manager, backend, queue):
        await manager.connect_sequential(["A", "C"], backend.discovery_map())
        assert manager.connection_status()["connected_count"] == 2

        await manager.disconnect_all()
        await manager.disconnect_all()
        await manager.disconnect_device("A")  # unknown now, no-op

        assert manager.connected_devices() == []
        assert not manager.is_connected()
        assert not backend.is_connected("A")
        counts = [
            n.count
            for n in drain_notifications(queue)
            if isinstance(n, AllDevicesDisconnected)
        ]
        assert counts == [2, 0]

    @pytest.mark.asyncio
    async def test_disconnect_all_survives_failed_disconnect(
        self, manager, backend, queue
    ):
        backend.peripherals["B"].fail_attempts = 0
        backend.peripherals["A"].fail_disconnect = True
        await manager.connect_sequential(["A", "B", "C"], backend.discovery_map())
        drain_notifications(queue)

        await manager.disconnect_all()

        assert sorted(backend.disconnect_log) == ["A", "B", "C"]
        assert not backend.is_connected("B")
        assert not backend.is_connected("C")
        assert manager.registry.connected_ids() == []
        assert manager.registry.connecting_ids() == []
        notifs = drain_notifications(queue)
        errors = {
            n.device_id: n.error for n in notifs if isinstance(n, DeviceDisconnected)
        }
        assert errors == {"A": "disconnect failed", "B": "", "C": ""}
        counts = [n.count for n in notifs if isinstance(n, AllDevicesDisconnected)]
        assert counts == [3]

    @pytest.mark.asyncio
    async def test_cancel_during_detail_reads_releases_link(
        self, fast_peripheral_settings
    ):
        reading = asyncio.Event()

        class SlowDetailsBackend(MockPeripheralBackend):
            async def read_characteristic(self, device_id, uuid):
                if uuid == FIRMWARE_REVISION_CHARACTERISTIC_UUID:
                    reading.set()
                    await asyncio.sleep(5)
                return await super().read_characteristic(device_id, uuid)

        backend = SlowDetailsBackend([MockPeripheral(id="A", name="Sensor A")])
        fast_peripheral_settings.characteristic_read_timeout = 10.0
        manager = PeripheralConnectionManager(backend, fast_peripheral_settings)
        task = asyncio.create_task(
            manager.connect_sequential(["A"], backend.discovery_map())
        )
        await asyncio.wait_for(reading.wait(), 2.0)
        assert backend.is_connected("A")
        assert manager.registry.is_connecting("A")

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not backend.is_connected("A")
        assert backend.disconnect_log == ["A"]
        assert manager.registry.connecting_ids() == []
        assert manager.registry.connected_ids() == []
        assert manager.get_device("A").connection_state == PeripheralState.FAILED

        await manager.disconnect_all()
        assert not backend.is_connected("A")

    @pytest.mark.asyncio
    async def test_disconnect_all_releases_half_open_connection(
        self, fast_peripheral_settings
    ):
        reading = asyncio.Event()

        class SlowDetailsBackend(MockPeripheralBackend):
            async def read_characteristic(self, device_id, uuid):
                if uuid == FIRMWARE_REVISION_CHARACTERISTIC_UUID:
                    reading.set()
                    await asyncio.sleep(5)
                return await super().read_characteristic(device_id, uuid)

        backend = SlowDetailsBackend([MockPeripheral(id="A", name="Sensor A")])
        fast_peripheral_settings.characteristic_read_timeout = 10.0
        manager = PeripheralConnectionManager(backend, fast_peripheral_settings)
        task = asyncio.create_task(
            manager.connect_device(backend.discovery_map()["A"])
        )
        try:
            await asyncio.wait_for(reading.wait(), 2.0)
            await manager.disconnect_all()

            assert not backend.is_connected("A")
            assert backend.disconnect_log == ["A"]
            assert manager.registry.connecting_ids() == []
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

    @pytest.mark.asyncio
    async def test_write_calibration_point_retries(self, manager, backend, queue):
        await manager.connect_sequential(["A"], backend.discovery_map())
        backend.peripherals["A"].fail_writes = 1

        assert await manager.write_calibration_point("A", "high", 300) == 2
        assert backend.peripherals["A"].received == [b"psi.calibrate.upper 300000"]
        written = [
            n
            for n in drain_notifications(queue)
            if isinstance(n, CalibrationPointWritten)
        ]
        assert [(n.device_id, n.kind, n.attempts) for n in written] == [
            ("A", "high", 2)
        ]
        assert written[0].pressure == pytest.approx(300.0)

    @pytest.mark.asyncio
    async def test_write_calibration_point_gives_up(self, manager, backend):
        await manager.connect_sequential(["A"], backend.discovery_map())
        backend.peripherals["A"].fail_writes = -1

        with pytest.raises(CalibrationWriteError) as exc_info:
            await manager.write_calibration_point("A", "zero")
        err = exc_info.value
        assert (err.device_id, err.kind, err.attempts) == ("A", "zero", 3)
        assert "did not acknowledge write" in err.reason
        assert backend.peripherals["A"].write_attempts == 3
        # giving up does not by itself take the device out
        assert manager.registry.is_connected("A")

    @pytest.mark.asyncio
    async def test_write_calibration_point_not_connected(self, manager, backend):
        with pytest.raises(CalibrationWriteError, match="not connected"):
            await manager.write_calibration_point("A", "low")
        assert backend.peripherals["A"].write_attempts == 0

    @pytest.mark.asyncio
    async def test_drop_disconnected(self, manager, backend, queue):
        await manager.connect_sequential(["A", "C"], backend.discovery_map())
        drain_notifications(queue)
        backend.peripherals["C"].connected = False

        assert await manager.drop_disconnected() == ["C"]
        assert await manager.drop_disconnected() == []
        assert manager.registry.connected_ids() == ["A"]
        assert manager.get_device("C").connection_state == PeripheralState.DISCONNECTED
        # the link was already down, nothing to tear down
        assert "C" not in backend.disconnect_log
        (lost,) = [
            n for n in drain_notifications(queue) if isinstance(n, DeviceDisconnected)
        ]
        assert (lost.device_id, lost.error) == ("C", "disconnected during calibration")

    @pytest.mark.asyncio
    async def test_write_to_all_removes_rejecting_peripheral(self, manager, backend):
        await manager.connect_sequential(["A", "C"], backend.discovery_map())
        backend.peripherals["C"].fail_writes = -1

        removed = await manager.write_calibration_point_to_all("zero")

        assert removed == ["C"]
        assert backend.peripherals["A"].received == [b"psi.calibrate.zero 0"]
        assert manager.registry.connected_ids() == ["A"]
        assert not backend.is_connected("C")

    @pytest.mark.asyncio
    async def test_write_to_all_stops_when_inactive(self, manager, backend):
        await manager.connect_sequential(["A", "C"], backend.discovery_map())
        removed = await manager.write_calibration_point_to_all(
            "low", is_active=lambda: False
        )
        assert removed == []
        assert backend.peripherals["A"].received == []

    @pytest.mark.asyncio
    async def test_discover(self, manager, backend):
        found = await manager.discover()
        assert [d.id for d in found] == ["A", "B", "C"]
        assert all(d.connection_state == PeripheralState.DISCOVERED for d in found)


def test_registry_connecting_and_connected_are_exclusive():
    registry = DeviceRegistry()
    device = registry.track(PeripheralDevice(id="A", name="A", address="aa"))
    registry.mark_connecting("A")
    assert registry.is_connecting("A") and not registry.is_connected("A")
    registry.mark_connected(device)
    assert registry.is_connected("A") and not registry.is_connecting("A")
    registry.mark_connecting("A")
    assert registry.is_connecting("A") and not registry.is_connected("A")
    registry.mark_failed("A")
    assert registry.connecting_ids() == [] and registry.connected_ids() == []


def test_parse_pressure_data():
    assert parse_pressure_data(encode_pressure(12.3)) == pytest.approx(12.3)
    assert parse_pressure_data(encode_pressure(300)) == pytest.approx(300.0)
    assert parse_pressure_data(encode_pressure(0)) == 0.0


@pytest.mark.parametrize("payload", [b"\0" * 24, b"", b"x" * 16 + b"abcde"])
def test_parse_pressure_data_malformed(payload):
    assert parse_pressure_data(payload) == 0.0


@pytest.mark.parametrize(
    "rssi, label",
    [
        (-30, "Excellent"),
        (-40, "Excellent"),
        (-50, "Good"),
        (-65, "Fair"),
        (-80, "Weak"),
        (-95, "Poor"),
        (None, "Unknown"),
    ],
)
def test_signal_strength(rssi, label):
    assert signal_strength(rssi) == label


def test_calibration_payload():
    assert calibration_payload("zero") == b"psi.calibrate.zero 0"
    assert calibration_payload("low", 0.0) == b"psi.calibrate.lower 0"
    assert calibration_payload("high", 12.5) == b"psi.calibrate.upper 12500"
    with pytest.raises(ValueError):
        calibration_payload("middle")
