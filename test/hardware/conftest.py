import pytest

from pressurecal.system import load_settings


@pytest.fixture(scope="session")
def hw_settings():
    """Instrument settings from ~/.pressurecal/settings.ini (skips if simulated)."""
    settings = load_settings()
    if settings.instrument.simulated:
        pytest.skip("Settings point at a simulated instrument")
    return settings.instrument
