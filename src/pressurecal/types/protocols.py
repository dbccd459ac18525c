"""Protocols for the two hardware seams of a calibration run.

`InstrumentDriver` is what the sweep scheduler and calibration session need
from the reference instrument. Both the TCP-backed `RealInstrument` and the
in-process `SimulatedInstrument` implement it, and the choice between them is
made once, when the driver is built (see `pressurecal.system.make_instrument`).

`PeripheralBackend` is the boundary to the host's wireless stack. The
connection manager owns sequencing, retries and bookkeeping; a backend only
performs single operations against one peripheral.

Protocols are `@runtime_checkable` so drivers can be validated with
`isinstance` at construction time.
"""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

from pressurecal.types.peripheral import DiscoveredPeripheral

IsActive = Callable[[], bool]


@runtime_checkable
class InstrumentDriver(Protocol):
    async def connect(self) -> bool: ...

    async def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    async def run_prerequisites(self, is_active: IsActive) -> None: ...

    async def set_pressure(
        self,
        target: float,
        verify: bool = True,
        tolerance: float | None = None,
        is_active: IsActive | None = None,
    ) -> float | None: ...

    async def set_zero_pressure(
        self, verify: bool = True, is_active: IsActive | None = None
    ) -> float | None: ...

    async def wait_for_settle(
        self, description: str, is_active: IsActive | None = None
    ) -> None: ...

    async def check_zero_pressure(self) -> bool: ...

    async def ensure_zero_pressure(self, is_active: IsActive | None = None) -> None: ...

    async def read_pressure(self) -> float: ...

    async def check_responsiveness(self) -> bool: ...

    async def return_to_zero(self) -> None: ...


@runtime_checkable
class PeripheralBackend(Protocol):
    async def discover(self, timeout: float) -> list[DiscoveredPeripheral]: ...

    async def connect(self, device_id: str, address: str) -> None: ...

    async def disconnect(self, device_id: str) -> None: ...

    def is_connected(self, device_id: str) -> bool: ...

    async def read_characteristic(self, device_id: str, uuid: str) -> bytes: ...

    async def write_characteristic(
        self, device_id: str, uuid: str, data: bytes
    ) -> None: ...
