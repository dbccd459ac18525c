"""Settings handling for pressurecal.

Settings live in an INI file, by default ``~/.pressurecal/settings.ini``:

[instrument]
host = 10.10.69.27
port = 3490
simulated = false
response_timeout = 5
...

[peripheral]
max_retries = 3
retry_delay = 2.0
...

[sweep]
max_pressure = 300
discrepancy_tolerance = 1.5
save_dir = ./calibrations/

Keys map one-to-one onto the fields of `InstrumentSettings`,
`PeripheralSettings` and `CalibrationSettings`. Missing keys take their
defaults; unknown keys are ignored with a warning.

See Also
--------
pressurecal.types.config : The settings dataclasses
"""

from __future__ import annotations

import asyncio
import dataclasses
from configparser import ConfigParser
from pathlib import Path

from loguru import logger

from pressurecal.device.instrument import RealInstrument
from pressurecal.device.mock import (
    MockPeripheral,
    MockPeripheralBackend,
    SimulatedInstrument,
)
from pressurecal.device.peripheral import PeripheralConnectionManager
from pressurecal.types.config import (
    CalibrationSettings,
    InstrumentSettings,
    PeripheralSettings,
)
from pressurecal.types.protocols import InstrumentDriver, PeripheralBackend
from pressurecal.util.defaults import CONFIG_DIR

SETTINGS_FILE = CONFIG_DIR / "settings.ini"

_SECTIONS = {
    "instrument": InstrumentSettings,
    "peripheral": PeripheralSettings,
}
_SWEEP_SECTION = "sweep"
_SWEEP_KEYS = ("max_pressure", "discrepancy_tolerance", "save_dir")


def _field_defaults(cls) -> dict:
    """field name -> default value (its type drives parsing)."""
    inst = cls()
    return {f.name: getattr(inst, f.name) for f in dataclasses.fields(cls)}


def _parse_section(config: ConfigParser, section: str, defaults: dict) -> dict:
    values = {}
    if not config.has_section(section):
        return values
    for key in config[section]:
        if key not in defaults:
            if key not in config.defaults():
                logger.warning("Ignoring unknown setting [{}] {}", section, key)
            continue
        kind = type(defaults[key])
        if kind is bool:
            values[key] = config.getboolean(section, key)
        elif kind is int:
            values[key] = config.getint(section, key)
        elif kind is float:
            values[key] = config.getfloat(section, key)
        else:
            values[key] = config.get(section, key)
    return values


def config_to_settings(config: ConfigParser) -> CalibrationSettings:
    """Build settings from a parsed INI file.

    Raises
    ------
    ValueError
        A value could not be parsed as the type its setting needs.
    """
    kwargs = {}
    for section, cls in _SECTIONS.items():
        kwargs[section] = cls(**_parse_section(config, section, _field_defaults(cls)))
    sweep_defaults = {
        k: v for k, v in _field_defaults(CalibrationSettings).items() if k in _SWEEP_KEYS
    }
    kwargs.update(_parse_section(config, _SWEEP_SECTION, sweep_defaults))
    return CalibrationSettings(**kwargs)


def settings_to_config(settings: CalibrationSettings) -> ConfigParser:
    config = ConfigParser()
    for section in _SECTIONS:
        sub = getattr(settings, section)
        config[section] = {
            f.name: _format_value(getattr(sub, f.name))
            for f in dataclasses.fields(sub)
        }
    config[_SWEEP_SECTION] = {
        key: _format_value(getattr(settings, key)) for key in _SWEEP_KEYS
    }
    return config


def _format_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def validate_settings(config: ConfigParser) -> tuple[bool, str]:
    """Validate a settings file.

    Returns
    -------
    tuple[bool, str]
        (is_valid, error_message)
    """
    try:
        settings = config_to_settings(config)
    except ValueError as e:
        return False, f"Invalid value: {e}"

    inst, periph = settings.instrument, settings.peripheral
    if not inst.host:
        return False, "[instrument] host must not be empty"
    if not 0 < inst.port < 65536:
        return False, f"[instrument] port out of range: {inst.port}"
    for name in ("response_timeout", "connect_timeout", "poll_interval"):
        if getattr(inst, name) <= 0:
            return False, f"[instrument] {name} must be > 0"
    if inst.max_reconnect_attempts < 0:
        return False, "[instrument] max_reconnect_attempts must be >= 0"
    if inst.pressure_tolerance <= 0 or inst.instrument_tolerance <= 0:
        return False, "[instrument] tolerances must be > 0"
    if periph.max_retries < 1:
        return False, "[peripheral] max_retries must be >= 1"
    if periph.write_retries < 1:
        return False, "[peripheral] write_retries must be >= 1"
    if periph.connection_timeout <= 0:
        return False, "[peripheral] connection_timeout must be > 0"
    if settings.max_pressure <= 0:
        return False, "[sweep] max_pressure must be > 0"
    return True, ""


def load_settings(path: str | Path | None = None) -> CalibrationSettings:
    """Load settings.

    Search order:
    1. `path`, if given (must exist)
    2. ~/.pressurecal/settings.ini
    3. built-in defaults

    Raises
    ------
    FileNotFoundError
        `path` was given but doesn't exist.
    ValueError
        The file failed validation.
    """
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Settings file not found: {path}")
    elif SETTINGS_FILE.exists():
        path = SETTINGS_FILE
    else:
        logger.debug("No settings file found, using defaults.")
        return CalibrationSettings()

    config = ConfigParser()
    config.read(path)
    valid, msg = validate_settings(config)
    if not valid:
        logger.error("Invalid settings in {}: {}", path, msg)
        raise ValueError(f"Invalid settings in {path}: {msg}")
    logger.info("Loaded settings from {}", path)
    return config_to_settings(config)


def save_settings(settings: CalibrationSettings, path: str | Path | None = None) -> Path:
    path = Path(path) if path is not None else SETTINGS_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        settings_to_config(settings).write(f)
    logger.debug("Wrote settings to {}", path)
    return path


def create_default_settings_file(
    path: str | Path | None = None, overwrite: bool = False
) -> Path:
    """Write a settings file full of defaults. Existing files are kept unless
    `overwrite`."""
    path = Path(path) if path is not None else SETTINGS_FILE
    if path.exists() and not overwrite:
        logger.info("Settings file {} already exists, leaving it.", path)
        return path
    return save_settings(CalibrationSettings(), path)


# ----------------------------------------------------------------------------------
# factories: real or simulated hardware, chosen once from settings
# ----------------------------------------------------------------------------------


def make_instrument(
    settings: InstrumentSettings, notif_queue: asyncio.Queue | None = None
) -> InstrumentDriver:
    if settings.simulated:
        logger.info("Using simulated reference instrument.")
        return SimulatedInstrument.from_settings(settings, notif_queue)
    return RealInstrument.from_settings(settings, notif_queue)


def demo_peripheral_backend(
    instrument: InstrumentDriver | None = None, count: int = 3
) -> MockPeripheralBackend:
    """Simulated peripherals that track a simulated instrument's pressure."""
    calibrator = getattr(instrument, "calibrator", None)
    reference = (lambda: calibrator.pressure) if calibrator is not None else None
    peripherals = [
        MockPeripheral(
            id=f"SIM-{i + 1:02d}",
            name=f"Sim Sensor {i + 1}",
            rssi=-45 - 10 * i,
            pressure_offset=0.1 * i,
        )
        for i in range(count)
    ]
    return MockPeripheralBackend(peripherals, reference=reference)


def make_peripheral_manager(
    settings: PeripheralSettings,
    backend: PeripheralBackend | None = None,
    instrument: InstrumentDriver | None = None,
    notif_queue: asyncio.Queue | None = None,
) -> PeripheralConnectionManager:
    """Connection manager over `backend`, or over simulated peripherals.

    Raises
    ------
    ValueError
        No backend given and peripherals are not simulated.
    """
    if backend is None:
        if not settings.simulated:
            raise ValueError(
                "No wireless backend given. Pass a PeripheralBackend or enable "
                + "[peripheral] simulated."
            )
        logger.info("Using simulated peripherals.")
        backend = demo_peripheral_backend(instrument)
    return PeripheralConnectionManager(backend, settings, notif_queue=notif_queue)
