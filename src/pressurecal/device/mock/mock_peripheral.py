from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable

from loguru import logger

from pressurecal.device.peripheral import (
    DISPLAY_NAME_CHARACTERISTIC_UUID,
    FIRMWARE_REVISION_CHARACTERISTIC_UUID,
    PRESSURE_CHARACTERISTIC_UUID,
    UART_RX_CHARACTERISTIC_UUID,
)
from pressurecal.types.peripheral import DiscoveredPeripheral


def encode_pressure(pressure: float) -> bytes:
    """Pressure characteristic payload for `pressure` (tenths, ASCII @16..20)."""
    payload = bytearray(24)
    text = f"{round(pressure * 10):d}".encode("utf-8")[:5]
    payload[16 : 16 + len(text)] = text
    return bytes(payload)


@dataclass
class MockPeripheral:
    id: str
    name: str
    address: str = ""
    rssi: int = -50
    firmware: str = "1.0.0"
    display_name: str = ""
    # attempts that fail before one succeeds, -1 for never
    fail_attempts: int = 0
    # disconnect requests are refused (the link stays up)
    fail_disconnect: bool = False
    # calibration writes that fail before one succeeds, -1 for never
    fail_writes: int = 0
    # the link drops on its own after this many pressure reads
    drop_after_reads: int | None = None
    pressure_offset: float = 0.0
    connected: bool = False
    attempts: int = 0
    reads: int = 0
    write_attempts: int = 0
    characteristics: dict[str, bytes] = field(default_factory=dict)
    # payloads accepted on the UART characteristic, in order
    received: list[bytes] = field(default_factory=list)

    def __post_init__(self):
        if not self.address:
            self.address = self.id
        if not self.display_name:
            self.display_name = self.name

    def discovery(self) -> DiscoveredPeripheral:
        return DiscoveredPeripheral(
            id=self.id, name=self.name, address=self.address, rssi=self.rssi
        )


class MockPeripheralBackend:
    """Scriptable in-memory wireless stack.

    `reference` is polled for the true pressure so simulated peripherals can
    track a (simulated) reference instrument.
    """

    def __init__(
        self,
        peripherals: list[MockPeripheral] | None = None,
        reference: Callable[[], float] | None = None,
        connect_delay: float = 0.0,
    ):
        self.peripherals = {p.id: p for p in (peripherals or [])}
        self.reference = reference if reference is not None else (lambda: 0.0)
        self.connect_delay = connect_delay
        self.attempt_log: list[str] = []
        self.disconnect_log: list[str] = []

    def add(self, peripheral: MockPeripheral) -> None:
        self.peripherals[peripheral.id] = peripheral

    def discovery_map(self) -> dict[str, DiscoveredPeripheral]:
        return {p.id: p.discovery() for p in self.peripherals.values()}

    async def discover(self, timeout: float) -> list[DiscoveredPeripheral]:
        await asyncio.sleep(0)
        return [p.discovery() for p in self.peripherals.values()]

    async def connect(self, device_id: str, address: str) -> None:
        self.attempt_log.append(device_id)
        periph = self.peripherals.get(device_id)
        if periph is None:
            raise ConnectionError(f"No peripheral at {address}")
        periph.attempts += 1
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if periph.fail_attempts < 0 or periph.attempts <= periph.fail_attempts:
            logger.trace("[SIM] {} refusing attempt {}", device_id, periph.attempts)
            raise ConnectionError(f"{device_id} did not respond")
        periph.connected = True

    async def disconnect(self, device_id: str) -> None:
        self.disconnect_log.append(device_id)
        periph = self.peripherals.get(device_id)
        if periph is None:
            return
        if periph.fail_disconnect:
            logger.trace("[SIM] {} refusing to disconnect", device_id)
            raise ConnectionError(f"{device_id} did not acknowledge disconnect")
        periph.connected = False

    def is_connected(self, device_id: str) -> bool:
        periph = self.peripherals.get(device_id)
        return periph is not None and periph.connected

    async def read_characteristic(self, device_id: str, uuid: str) -> bytes:
        periph = self.peripherals.get(device_id)
        if periph is None or not periph.connected:
            raise ConnectionError(f"{device_id} is not connected")
        if uuid in periph.characteristics:
            return periph.characteristics[uuid]
        match uuid:
            case _ if uuid == FIRMWARE_REVISION_CHARACTERISTIC_UUID:
                return periph.firmware.encode("utf-8") + b"\0\0"
            case _ if uuid == DISPLAY_NAME_CHARACTERISTIC_UUID:
                return periph.display_name.encode("utf-8") + b"\0"
            case _ if uuid == PRESSURE_CHARACTERISTIC_UUID:
                return self._read_pressure(periph)
            case _:
                raise KeyError(f"{device_id} has no characteristic {uuid}")

    def _read_pressure(self, periph: MockPeripheral) -> bytes:
        periph.reads += 1
        limit = periph.drop_after_reads
        if limit is not None and periph.reads > limit:
            logger.trace("[SIM] {} dropped its link", periph.id)
            periph.connected = False
            raise ConnectionError(f"{periph.id} is not connected")
        return encode_pressure(self.reference() + periph.pressure_offset)

    async def write_characteristic(
        self, device_id: str, uuid: str, data: bytes
    ) -> None:
        periph = self.peripherals.get(device_id)
        if periph is None or not periph.connected:
            raise ConnectionError(f"{device_id} is not connected")
        if uuid != UART_RX_CHARACTERISTIC_UUID:
            raise KeyError(f"{device_id} has no writable characteristic {uuid}")
        periph.write_attempts += 1
        if periph.fail_writes < 0 or periph.write_attempts <= periph.fail_writes:
            logger.trace("[SIM] {} rejecting a write", device_id)
            raise ConnectionError(f"{device_id} did not acknowledge write")
        periph.received.append(bytes(data))
