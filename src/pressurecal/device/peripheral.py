"""Wireless pressure-sensor peripherals: bookkeeping and connection sequencing.

Wireless stacks cope badly with concurrent connection attempts, so
peripherals are connected strictly one at a time, in the caller's order.
Each gets up to `max_retries` attempts. After a failed attempt any partial
connection is torn down and the stack is given a moment to release before the
next try, and a pause separates one device from the next. One bad peripheral
therefore never blocks the others, it only lands in the `failed` list.

During a run the manager also sends each peripheral its zero, low and high
calibration points over the UART characteristic. A peripheral that drops its
link or rejects a write is taken out of the run.

The actual radio work is delegated to a `PeripheralBackend`.
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections.abc import Callable, Iterable, Mapping

from loguru import logger

from pressurecal.device.device import Device
from pressurecal.types.config import PeripheralSettings
from pressurecal.types.errors import CalibrationWriteError, DeviceConnectionError
from pressurecal.types.messages import (
    AllDevicesDisconnected,
    CalibrationPointWritten,
    ConnectionsComplete,
    DeviceConnectionFailed,
    DeviceConnectionRetry,
    DeviceConnectionStarted,
    DeviceConnectionSucceeded,
    DeviceDisconnected,
)
from pressurecal.types.peripheral import (
    ConnectionResults,
    DiscoveredPeripheral,
    FailedConnection,
    PeripheralDevice,
    PeripheralState,
)
from pressurecal.types.protocols import IsActive, PeripheralBackend

SERVICE_UUID = "7db2588688c8495ca4518e43d5e8e7d0"
PRESSURE_CHARACTERISTIC_UUID = "dab8fe8e75d948f3a6a09bdfb9435121"
DISPLAY_NAME_CHARACTERISTIC_UUID = "c91a9bbe24700ce481ed818844bdca4e"
FIRMWARE_REVISION_CHARACTERISTIC_UUID = "2a26"
# Nordic UART service, receive side (host -> peripheral)
UART_RX_CHARACTERISTIC_UUID = "6e400002b5a3f393e0a9e50e24dcca9e"

CALIBRATION_COMMANDS = {
    "zero": "psi.calibrate.zero",
    "low": "psi.calibrate.lower",
    "high": "psi.calibrate.upper",
}

UNKNOWN_FIRMWARE = "Unknown"

DeviceInfoLookup = Mapping[str, DiscoveredPeripheral] | Callable[
    [str], DiscoveredPeripheral | None
]


def parse_pressure_data(data: bytes) -> float:
    """Pressure from a pressure-characteristic payload.

    The value is ASCII in bytes 16-20 (NUL padded), in tenths.
    Malformed payloads read as 0.0.
    """
    try:
        text = bytes(data[16:21]).decode("utf-8").replace("\0", "").strip()
        return round(float(text)) / 10
    except (ValueError, UnicodeDecodeError):
        logger.error("Failed to parse pressure data: {!r}", data)
        return 0.0


def calibration_payload(kind: str, pressure: float = 0.0) -> bytes:
    """UART payload for one calibration point.

    The command name, a space, then the reference pressure in milli-PSI as
    an integer, e.g. ``b"psi.calibrate.upper 300000"``.

    Raises
    ------
    ValueError
        Unknown `kind`.
    """
    try:
        command = CALIBRATION_COMMANDS[kind]
    except KeyError:
        raise ValueError(f"Unknown calibration point {kind!r}") from None
    return f"{command} {round(pressure * 1000):d}".encode("ascii")


def decode_text(data: bytes | None) -> str:
    if not data:
        return ""
    return bytes(data).decode("utf-8", errors="replace").replace("\0", "").strip()


def signal_strength(rssi: int | None) -> str:
    if rssi is None:
        return "Unknown"
    if rssi >= -40:
        return "Excellent"
    if rssi >= -55:
        return "Good"
    if rssi >= -70:
        return "Fair"
    if rssi >= -85:
        return "Weak"
    return "Poor"


class DeviceRegistry:
    """Per-session record of peripherals being connected / connected.

    A device id is never in both `connecting` and `connected`.
    """

    def __init__(self):
        self._connecting: set[str] = set()
        self._connected: dict[str, PeripheralDevice] = {}
        self._devices: dict[str, PeripheralDevice] = {}

    def track(self, device: PeripheralDevice) -> PeripheralDevice:
        return self._devices.setdefault(device.id, device)

    def get(self, device_id: str) -> PeripheralDevice | None:
        return self._devices.get(device_id)

    def is_connecting(self, device_id: str) -> bool:
        return device_id in self._connecting

    def is_connected(self, device_id: str) -> bool:
        return device_id in self._connected

    def mark_connecting(self, device_id: str) -> None:
        self._connected.pop(device_id, None)
        self._connecting.add(device_id)
        self._set_state(device_id, PeripheralState.CONNECTING)

    def mark_connected(self, device: PeripheralDevice) -> None:
        self._connecting.discard(device.id)
        device.connection_state = PeripheralState.CONNECTED
        device.connected_at = time.time()
        self._devices[device.id] = device
        self._connected[device.id] = device

    def mark_failed(self, device_id: str) -> None:
        self._connecting.discard(device_id)
        self._connected.pop(device_id, None)
        self._set_state(device_id, PeripheralState.FAILED)

    def mark_disconnected(self, device_id: str) -> None:
        self._connecting.discard(device_id)
        self._connected.pop(device_id, None)
        self._set_state(device_id, PeripheralState.DISCONNECTED)

    def _set_state(self, device_id: str, state: PeripheralState) -> None:
        if device_id in self._devices:
            self._devices[device_id].connection_state = state

    def connected_ids(self) -> list[str]:
        return list(self._connected)

    def connecting_ids(self) -> list[str]:
        return list(self._connecting)

    def snapshot(self, device_id: str) -> PeripheralDevice | None:
        device = self._devices.get(device_id)
        return copy.copy(device) if device is not None else None

    def connected_snapshots(self) -> list[PeripheralDevice]:
        return [copy.copy(dev) for dev in self._connected.values()]

    def clear(self) -> None:
        self._connecting.clear()
        self._connected.clear()
        self._devices.clear()


class PeripheralConnectionManager(Device):
    """Discovers, connects and tracks wireless pressure peripherals.

    Parameters
    ----------
    backend : PeripheralBackend
        The wireless stack.
    settings : PeripheralSettings, optional
        Retry counts, delays & timeouts (seconds).
    registry : DeviceRegistry, optional
        Owned bookkeeping. A fresh one is made if not given.
    notif_queue : asyncio.Queue, optional
        Where connection events are put.
    """

    def __init__(
        self,
        backend: PeripheralBackend,
        settings: PeripheralSettings | None = None,
        registry: DeviceRegistry | None = None,
        notif_queue: asyncio.Queue | None = None,
    ):
        super().__init__(notif_queue=notif_queue)
        if not isinstance(backend, PeripheralBackend):
            raise TypeError(f"{backend!r} does not implement PeripheralBackend")
        self.backend = backend
        self.settings = settings if settings is not None else PeripheralSettings()
        self.registry = registry if registry is not None else DeviceRegistry()

    async def connect(self) -> bool:
        """Nothing to open, peripherals connect individually."""
        return True

    async def disconnect(self) -> None:
        await self.disconnect_all()

    def is_connected(self) -> bool:
        return bool(self.registry.connected_ids())

    # ----------------------------------------------------------------------------------
    # discovery
    # ----------------------------------------------------------------------------------

    async def discover(self, timeout: float | None = None) -> list[PeripheralDevice]:
        timeout = self.settings.scan_timeout if timeout is None else timeout
        logger.info("Scanning for peripherals ({}s)...", timeout)
        found = await self.backend.discover(timeout)
        devices = [
            copy.copy(self.registry.track(PeripheralDevice.from_discovery(info)))
            for info in found
        ]
        logger.info("Found {} peripheral(s)", len(devices))
        return devices

    # ----------------------------------------------------------------------------------
    # connection
    # ----------------------------------------------------------------------------------

    async def connect_device(self, info: DiscoveredPeripheral) -> PeripheralDevice:
        """One connection attempt, then best-effort detail reads.

        Raises
        ------
        DeviceConnectionError
            The attempt failed or timed out (partial state is cleaned up).
        """
        device_id = info.id
        if self.registry.is_connected(device_id):
            logger.debug("Peripheral {} already connected.", device_id)
            return self.registry.snapshot(device_id)
        if self.registry.is_connecting(device_id):
            raise DeviceConnectionError(device_id, "connection already in progress")

        device = self.registry.track(PeripheralDevice.from_discovery(info))
        # stays "connecting" until mark_connected, so disconnect_all can reach it
        self.registry.mark_connecting(device_id)
        try:
            if self.backend.is_connected(device_id):
                logger.debug("Releasing stale connection to {}", device_id)
                await self._backend_disconnect(device_id)
                await asyncio.sleep(self.settings.stack_release_delay)

            try:
                await asyncio.wait_for(
                    self.backend.connect(device_id, info.address),
                    self.settings.connection_timeout,
                )
            except Exception as e:
                await self._handle_connection_error(device_id)
                if isinstance(e, asyncio.TimeoutError):
                    reason = f"timed out after {self.settings.connection_timeout}s"
                else:
                    reason = str(e) or e.__class__.__name__
                raise DeviceConnectionError(device_id, reason) from e

            await self._gather_details(device)
        except asyncio.CancelledError:
            logger.warning("Connection to {} cancelled, releasing it", device_id)
            await asyncio.shield(self._backend_disconnect(device_id))
            self.registry.mark_failed(device_id)
            raise

        self.registry.mark_connected(device)
        logger.info(
            "Peripheral {} ({}) connected, firmware {}",
            device.display_name,
            device_id,
            device.firmware_version,
        )
        return copy.copy(device)

    async def _gather_details(self, device: PeripheralDevice) -> None:
        firmware = await self._read_text(
            device.id, FIRMWARE_REVISION_CHARACTERISTIC_UUID
        )
        display_name = await self._read_text(
            device.id, DISPLAY_NAME_CHARACTERISTIC_UUID
        )
        device.firmware_version = firmware or UNKNOWN_FIRMWARE
        device.display_name = display_name or device.name

    async def _read_text(self, device_id: str, uuid: str) -> str:
        try:
            data = await asyncio.wait_for(
                self.backend.read_characteristic(device_id, uuid),
                self.settings.characteristic_read_timeout,
            )
        except Exception as e:
            logger.warning(
                "Could not read characteristic {} from {}: {!r}", uuid, device_id, e
            )
            return ""
        return decode_text(data)

    async def _handle_connection_error(self, device_id: str) -> None:
        self.registry.mark_failed(device_id)
        await self._backend_disconnect(device_id)

    async def _backend_disconnect(self, device_id: str) -> bool:
        try:
            await asyncio.wait_for(
                self.backend.disconnect(device_id), self.settings.disconnect_timeout
            )
        except Exception as e:
            logger.warning("Disconnect of {} failed: {!r}", device_id, e)
            return False
        return True

    async def connect_sequential(
        self,
        device_ids: Iterable[str],
        device_info: DeviceInfoLookup,
        is_active: IsActive | None = None,
    ) -> ConnectionResults:
        """Connect `device_ids` one after another, with retries.

        Parameters
        ----------
        device_ids : Iterable[str]
            Order of connection.
        device_info : Mapping or Callable
            id -> DiscoveredPeripheral (or None if unknown).
        is_active : Callable[[], bool], optional
            Sampled before each device. Once False, remaining devices are
            reported as failed without being attempted.
        """
        device_ids = list(device_ids)
        lookup = device_info.get if isinstance(device_info, Mapping) else device_info
        results = ConnectionResults()
        total = len(device_ids)
        logger.info("Connecting {} peripheral(s) sequentially", total)

        for i, device_id in enumerate(device_ids):
            if is_active is not None and not is_active():
                logger.info("Connection batch cancelled before {}", device_id)
                results.failed.append(
                    FailedConnection(id=device_id, name="", reason="Connection cancelled")
                )
                continue

            info = lookup(device_id)
            if info is None:
                logger.error("Device info not found for {}", device_id)
                results.failed.append(
                    FailedConnection(
                        id=device_id, name="Unknown", reason="Device info not found"
                    )
                )
                continue

            self._notify(
                DeviceConnectionStarted(
                    device_id=device_id, name=info.name, index=i, total=total
                )
            )
            device, attempts, reason = await self._connect_with_retries(info)
            if device is not None:
                results.successful.append(device)
                self._notify(
                    DeviceConnectionSucceeded(
                        device_id=device_id,
                        display_name=device.display_name,
                        firmware_version=device.firmware_version,
                        attempts=attempts,
                    )
                )
            else:
                logger.error(
                    "Peripheral {} failed after {} attempts: {}",
                    device_id,
                    attempts,
                    reason,
                )
                results.failed.append(
                    FailedConnection(
                        id=device_id, name=info.name, reason=reason, attempts=attempts
                    )
                )
                self._notify(
                    DeviceConnectionFailed(
                        device_id=device_id, reason=reason, attempts=attempts
                    )
                )

            if i < total - 1:
                await asyncio.sleep(self.settings.inter_connection_delay)

        logger.info(
            "Connection batch done: {} connected, {} failed",
            len(results.successful),
            len(results.failed),
        )
        self._notify(
            ConnectionsComplete(
                successful=results.successful_ids, failed=results.failed_ids
            )
        )
        return results

    async def _connect_with_retries(
        self, info: DiscoveredPeripheral
    ) -> tuple[PeripheralDevice | None, int, str]:
        max_attempts = self.settings.max_retries
        reason = ""
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                self._notify(
                    DeviceConnectionRetry(
                        device_id=info.id,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        error=reason,
                    )
                )
                await asyncio.sleep(self.settings.retry_delay)
            logger.info(
                "Connecting to {} (attempt {}/{})", info.id, attempt, max_attempts
            )
            try:
                return await self.connect_device(info), attempt, ""
            except DeviceConnectionError as e:
                reason = e.reason
                logger.warning("Attempt {} for {} failed: {}", attempt, info.id, reason)
                await asyncio.sleep(self.settings.cleanup_delay)
        return None, max_attempts, reason

    # ----------------------------------------------------------------------------------
    # disconnection
    # ----------------------------------------------------------------------------------

    async def disconnect_device(self, device_id: str) -> None:
        """Disconnect one peripheral. No-op if it isn't connected."""
        if not self.registry.is_connected(device_id):
            return
        ok = await self._backend_disconnect(device_id)
        self.registry.mark_disconnected(device_id)
        logger.info("Peripheral {} disconnected", device_id)
        self._notify(
            DeviceDisconnected(
                device_id=device_id, error="" if ok else "disconnect failed"
            )
        )

    async def disconnect_all(self) -> None:
        """Disconnect everything; bookkeeping is cleared even if some fail."""
        device_ids = self.registry.connected_ids()
        if device_ids:
            logger.info("Disconnecting {} peripheral(s)", len(device_ids))
        results = await asyncio.gather(
            *(self.disconnect_device(dev_id) for dev_id in device_ids),
            return_exceptions=True,
        )
        for dev_id, res in zip(device_ids, results):
            if isinstance(res, BaseException):
                logger.error("Error disconnecting {}: {!r}", dev_id, res)
        for dev_id in self.registry.connecting_ids():
            logger.info("Releasing half-open connection to {}", dev_id)
            await self._backend_disconnect(dev_id)
        self.registry.clear()
        self._notify(AllDevicesDisconnected(count=len(device_ids)))

    async def remove_device(self, device_id: str, reason: str) -> None:
        """Take a peripheral out of the run, e.g. after it dropped its link."""
        if not self.registry.is_connected(device_id):
            return
        logger.warning("Removing peripheral {} from the run: {}", device_id, reason)
        if self.backend.is_connected(device_id):
            await self._backend_disconnect(device_id)
        self.registry.mark_disconnected(device_id)
        self._notify(DeviceDisconnected(device_id=device_id, error=reason))

    async def drop_disconnected(self) -> list[str]:
        """Remove every peripheral whose link went down. Returns their ids."""
        dropped = [
            dev_id
            for dev_id in self.registry.connected_ids()
            if not self.backend.is_connected(dev_id)
        ]
        for dev_id in dropped:
            await self.remove_device(dev_id, "disconnected during calibration")
        return dropped

    # ----------------------------------------------------------------------------------
    # calibration writes
    # ----------------------------------------------------------------------------------

    async def write_calibration_point(
        self, device_id: str, kind: str, pressure: float = 0.0
    ) -> int:
        """Tell a peripheral the reference is at its `kind` point.

        `kind` is ``"zero"``, ``"low"`` or ``"high"``; `pressure` is the
        reference pressure the point was taken at. Up to `write_retries`
        attempts, `retry_delay` apart.

        Returns
        -------
        int
            Attempts used.

        Raises
        ------
        CalibrationWriteError
            Not connected, link lost, or every attempt failed.
        """
        payload = calibration_payload(kind, pressure)
        max_attempts = self.settings.write_retries
        reason = ""
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self.settings.retry_delay)
            if not self.registry.is_connected(device_id):
                raise CalibrationWriteError(device_id, kind, "not connected", attempt)
            if not self.backend.is_connected(device_id):
                raise CalibrationWriteError(device_id, kind, "link lost", attempt)
            try:
                await asyncio.wait_for(
                    self.backend.write_characteristic(
                        device_id, UART_RX_CHARACTERISTIC_UUID, payload
                    ),
                    self.settings.write_timeout,
                )
            except Exception as e:
                if isinstance(e, asyncio.TimeoutError):
                    reason = f"timed out after {self.settings.write_timeout}s"
                else:
                    reason = str(e) or e.__class__.__name__
                logger.warning(
                    "{} write to {} failed (attempt {}/{}): {}",
                    kind,
                    device_id,
                    attempt,
                    max_attempts,
                    reason,
                )
                continue
            logger.info(
                "Sent {} calibration point ({}) to {}", kind, pressure, device_id
            )
            self._notify(
                CalibrationPointWritten(
                    device_id=device_id, kind=kind, pressure=pressure, attempts=attempt
                )
            )
            return attempt
        raise CalibrationWriteError(device_id, kind, reason, max_attempts)

    async def write_calibration_point_to_all(
        self, kind: str, pressure: float = 0.0, is_active: IsActive | None = None
    ) -> list[str]:
        """Write one calibration point to every connected peripheral in turn.

        A peripheral that rejects the write (or has lost its link) is removed
        from the run. Returns the ids removed.
        """
        removed = []
        for device_id in self.registry.connected_ids():
            if is_active is not None and not is_active():
                logger.info("{} calibration writes interrupted", kind)
                break
            try:
                await self.write_calibration_point(device_id, kind, pressure)
            except CalibrationWriteError as e:
                logger.error("{}", e)
                await self.remove_device(device_id, str(e))
                removed.append(device_id)
                continue
            await asyncio.sleep(self.settings.write_delay)
        return removed

    # ----------------------------------------------------------------------------------
    # readings & status
    # ----------------------------------------------------------------------------------

    async def read_pressure(self, device_id: str) -> float | None:
        """Current pressure from a connected peripheral, None if unavailable."""
        if not self.registry.is_connected(device_id):
            return None
        try:
            data = await asyncio.wait_for(
                self.backend.read_characteristic(
                    device_id, PRESSURE_CHARACTERISTIC_UUID
                ),
                self.settings.characteristic_read_timeout,
            )
        except Exception as e:
            logger.warning("Pressure read from {} failed: {!r}", device_id, e)
            return None
        return parse_pressure_data(data)

    def connected_devices(self) -> list[PeripheralDevice]:
        return self.registry.connected_snapshots()

    def get_device(self, device_id: str) -> PeripheralDevice | None:
        return self.registry.snapshot(device_id)

    def connection_status(self) -> dict:
        connected = self.registry.connected_ids()
        return {
            "connected_count": len(connected),
            "connecting_count": len(self.registry.connecting_ids()),
            "connected_device_ids": connected,
        }
