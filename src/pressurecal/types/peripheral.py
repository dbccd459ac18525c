"""Value types for wireless pressure-sensor peripherals."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from mashumaro import DataClassDictMixin


class PeripheralState(enum.Enum):
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


@dataclass(frozen=True)
class DiscoveredPeripheral(DataClassDictMixin):
    """What a scan yields for one peripheral."""

    id: str
    name: str
    address: str
    rssi: int | None = None


@dataclass(kw_only=True)
class PeripheralDevice(DataClassDictMixin):
    """Lifecycle record for one peripheral.

    The connection manager owns these; callers only ever get copies.
    """

    id: str
    name: str
    address: str
    display_name: str = ""
    rssi: int | None = None
    connection_state: PeripheralState = PeripheralState.DISCOVERED
    firmware_version: str = "Unknown"
    connected_at: float | None = None

    def __post_init__(self):
        if not self.display_name:
            self.display_name = self.name

    @classmethod
    def from_discovery(cls, info: DiscoveredPeripheral) -> PeripheralDevice:
        return cls(id=info.id, name=info.name, address=info.address, rssi=info.rssi)


@dataclass(frozen=True)
class FailedConnection(DataClassDictMixin):
    id: str
    name: str
    reason: str
    attempts: int = 0


@dataclass
class ConnectionResults(DataClassDictMixin):
    """Outcome of a sequential connection batch."""

    successful: list[PeripheralDevice] = field(default_factory=list)
    failed: list[FailedConnection] = field(default_factory=list)

    @property
    def all_connected(self) -> bool:
        return not self.failed

    @property
    def any_connected(self) -> bool:
        return bool(self.successful)

    @property
    def successful_ids(self) -> list[str]:
        return [dev.id for dev in self.successful]

    @property
    def failed_ids(self) -> list[str]:
        return [f.id for f in self.failed]
