import pytest
import pytest_asyncio

from pressurecal.device.mock import SimulatedCalibrator, SimulatedInstrumentServer
from pressurecal.types import InstrumentSettings, PeripheralSettings


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "slow: marks test as slow running test")
    config.addinivalue_line(
        "markers", "hardware: marks test that require physical hardware"
    )


@pytest.fixture
def fast_instrument_settings():
    """Instrument timing shrunk so a whole sweep runs in well under a second."""
    return InstrumentSettings(
        simulated=True,
        response_timeout=1.0,
        connect_timeout=1.0,
        close_timeout=0.5,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        command_delay=0.0,
        enforce_settle_delay=0.0,
        poll_interval=0.01,
    )


@pytest.fixture
def fast_peripheral_settings():
    return PeripheralSettings(
        simulated=True,
        retry_delay=0.01,
        inter_connection_delay=0.01,
        cleanup_delay=0.0,
        stack_release_delay=0.0,
        connection_timeout=1.0,
        disconnect_timeout=0.5,
        characteristic_read_timeout=0.5,
        scan_timeout=0.1,
        write_timeout=0.5,
        write_delay=0.0,
    )


@pytest_asyncio.fixture
async def instrument_server():
    """A simulated instrument listening on a free localhost port."""
    server = SimulatedInstrumentServer(SimulatedCalibrator())
    await server.start()
    yield server
    await server.stop()
