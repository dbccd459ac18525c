"""
Hardware endpoints of a calibration run.

- `InstrumentLink`: line-oriented TCP session to the pressure reference
- `InstrumentController` / `RealInstrument`: instrument command vocabulary,
  prerequisites and verified pressure setting
- `PeripheralConnectionManager`: sequential connection of wireless
  pressure peripherals
- `mock`: simulated versions of all of the above
"""

from .commands import (
    PREREQUISITE_CHECKS,
    SETTLED_STATUS,
    Command,
    PrerequisiteCheck,
    expects_response,
)
from .device import Device
from .instrument import InstrumentController, RealInstrument
from .instrument_link import InstrumentLink, LinkStatus, reconnect_delay
from .mock import (
    MockPeripheral,
    MockPeripheralBackend,
    SimulatedCalibrator,
    SimulatedInstrument,
    SimulatedInstrumentServer,
)
from .peripheral import (
    DeviceRegistry,
    PeripheralConnectionManager,
    parse_pressure_data,
    signal_strength,
)
