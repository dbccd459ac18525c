import textwrap
from configparser import ConfigParser

import pytest

from pressurecal.device.instrument import RealInstrument
from pressurecal.device.mock import SimulatedInstrument
from pressurecal.device.peripheral import PeripheralConnectionManager
from pressurecal.system import (
    config_to_settings,
    create_default_settings_file,
    demo_peripheral_backend,
    load_settings,
    make_instrument,
    make_peripheral_manager,
    save_settings,
    settings_to_config,
    validate_settings,
)
from pressurecal.types import (
    CalibrationSettings,
    InstrumentSettings,
    PeripheralSettings,
)


def _config(text: str) -> ConfigParser:
    config = ConfigParser()
    config.read_string(textwrap.dedent(text))
    return config


class TestSettingsFile:
    def test_defaults_without_sections(self):
        settings = config_to_settings(ConfigParser())
        assert settings == CalibrationSettings()

    def test_parses_types(self):
        settings = config_to_settings(
            _config(
                """
                [instrument]
                host = 192.168.1.50
                port = 5025
                simulated = yes
                response_timeout = 2.5

                [peripheral]
                max_retries = 5
                retry_delay = 0.25

                [sweep]
                max_pressure = 150
                save_dir = /data/cal
                """
            )
        )
        assert settings.instrument.host == "192.168.1.50"
        assert settings.instrument.port == 5025
        assert settings.instrument.simulated is True
        assert settings.instrument.response_timeout == 2.5
        assert settings.peripheral.max_retries == 5
        assert settings.peripheral.retry_delay == 0.25
        assert settings.max_pressure == 150.0
        assert settings.save_dir == "/data/cal"
        # untouched keys keep defaults
        assert settings.peripheral.scan_timeout == PeripheralSettings().scan_timeout

    def test_unknown_keys_ignored(self):
        settings = config_to_settings(_config("[instrument]\nbaud = 9600\n"))
        assert settings.instrument == InstrumentSettings()

    def test_round_trip_through_ini(self, tmp_path):
        settings = CalibrationSettings(
            instrument=InstrumentSettings(host="calibrator.local", simulated=True),
            peripheral=PeripheralSettings(max_retries=4),
            max_pressure=200.0,
        )
        path = save_settings(settings, tmp_path / "sub" / "settings.ini")
        assert path.exists()
        assert load_settings(path) == settings
        assert settings_to_config(settings)["instrument"]["simulated"] == "true"

    @pytest.mark.parametrize(
        "text, fragment",
        [
            ("[instrument]\nhost =\n", "host"),
            ("[instrument]\nport = 70000\n", "port"),
            ("[instrument]\nport = abc\n", "Invalid value"),
            ("[instrument]\nresponse_timeout = 0\n", "response_timeout"),
            ("[instrument]\nmax_reconnect_attempts = -1\n", "max_reconnect_attempts"),
            ("[instrument]\npressure_tolerance = 0\n", "tolerances"),
            ("[peripheral]\nmax_retries = 0\n", "max_retries"),
            ("[peripheral]\nwrite_retries = 0\n", "write_retries"),
            ("[peripheral]\nconnection_timeout = -1\n", "connection_timeout"),
            ("[sweep]\nmax_pressure = 0\n", "max_pressure"),
        ],
    )
    def test_validate_rejects(self, text, fragment):
        valid, msg = validate_settings(_config(text))
        assert not valid
        assert fragment in msg

    def test_validate_accepts_defaults(self):
        assert validate_settings(settings_to_config(CalibrationSettings())) == (True, "")

    def test_load_missing_explicit_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "nope.ini")

    def test_load_invalid_file(self, tmp_path):
        path = tmp_path / "settings.ini"
        path.write_text("[instrument]\nport = 0\n")
        with pytest.raises(ValueError):
            load_settings(path)

    def test_create_default_keeps_existing(self, tmp_path):
        path = tmp_path / "settings.ini"
        path.write_text("[sweep]\nmax_pressure = 100\n")
        create_default_settings_file(path)
        assert load_settings(path).max_pressure == 100.0
        create_default_settings_file(path, overwrite=True)
        assert load_settings(path) == CalibrationSettings()


class TestFactories:
    def test_make_instrument(self):
        simulated = make_instrument(InstrumentSettings(simulated=True))
        assert isinstance(simulated, SimulatedInstrument)
        # simulated timing is shortened
        assert simulated.settings.poll_interval < InstrumentSettings().poll_interval
        assert isinstance(make_instrument(InstrumentSettings()), RealInstrument)

    def test_make_peripheral_manager(self):
        instrument = make_instrument(InstrumentSettings(simulated=True))
        manager = make_peripheral_manager(
            PeripheralSettings(simulated=True), instrument=instrument
        )
        assert isinstance(manager, PeripheralConnectionManager)
        with pytest.raises(ValueError):
            make_peripheral_manager(PeripheralSettings())

    def test_demo_backend_tracks_instrument(self):
        instrument = make_instrument(InstrumentSettings(simulated=True))
        backend = demo_peripheral_backend(instrument, count=2)
        assert list(backend.peripherals) == ["SIM-01", "SIM-02"]
        instrument.calibrator.pressure = 42.0
        assert backend.reference() == 42.0
