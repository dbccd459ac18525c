# -*- coding: utf-8 -*-

import pathlib

# reference instrument (pressure calibrator) over raw TCP
DEFAULT_INSTRUMENT_HOST = "10.10.69.27"
DEFAULT_INSTRUMENT_PORT = 3490
DEFAULT_TIMEOUT = 5.0  # seconds, per command response
DEFAULT_CONNECT_TIMEOUT = 5.0  # seconds
DEFAULT_CLOSE_TIMEOUT = 2.0  # seconds, before a socket close is abandoned
DEFAULT_RECONNECT_ATTEMPTS = 3
DEFAULT_RECONNECT_BASE_DELAY = 1.0  # seconds, doubled each attempt
DEFAULT_RECONNECT_MAX_DELAY = 10.0  # seconds

DEFAULT_COMMAND_DELAY = 1.0  # seconds, before each prerequisite check
DEFAULT_ENFORCE_SETTLE_DELAY = 1.0  # seconds, after an enforce command
DEFAULT_POLL_INTERVAL = 2.0  # seconds, settle status polling
DEFAULT_INSTRUMENT_TOLERANCE = 0.1  # instrument control tolerance & zero threshold
DEFAULT_PRESSURE_TOLERANCE = 0.5  # accepted |measured - target| after a set

# wireless peripherals
DEFAULT_RETRIES = 3  # connection attempts per peripheral
DEFAULT_RETRY_DELAY = 2.0  # seconds
DEFAULT_INTER_CONNECTION_DELAY = 1.5  # seconds
DEFAULT_CLEANUP_DELAY = 0.5  # seconds
DEFAULT_STACK_RELEASE_DELAY = 1.0  # seconds
DEFAULT_CONNECTION_TIMEOUT = 30.0  # seconds
DEFAULT_DISCONNECT_TIMEOUT = 5.0  # seconds
DEFAULT_CHARACTERISTIC_READ_TIMEOUT = 15.0  # seconds
DEFAULT_SCAN_TIMEOUT = 10.0  # seconds
DEFAULT_WRITE_RETRIES = 3  # attempts per calibration write
DEFAULT_WRITE_TIMEOUT = 10.0  # seconds, per calibration write
DEFAULT_WRITE_DELAY = 1.0  # seconds, after each successful calibration write

# sweep
DEFAULT_MAX_PRESSURE = 300.0
DEFAULT_DISCREPANCY_TOLERANCE = 1.5  # certification, mean |sensor - reference|

DEFAULT_LOGLEVEL = "INFO"
TEST_LOGLEVEL = "TRACE"
SINGLE_LINE_ERR_LOG = False  # reformat tracebacks into a single line for events

CONFIG_DIR = pathlib.Path.home().joinpath(".pressurecal")
