"""Simulated hardware: a pressure reference and wireless peripherals."""

from .mock_instrument import (
    SIM_IDENT,
    LoopbackLink,
    SimulatedCalibrator,
    SimulatedInstrument,
)
from .mock_peripheral import MockPeripheral, MockPeripheralBackend, encode_pressure
from .mock_server import SimulatedInstrumentServer
