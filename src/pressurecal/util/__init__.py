# -*- coding: utf-8 -*-
"""
Utility functions and constants for pressurecal.

- Logging configuration and management
- Saving calibration results
- Pressure profile generation
- Ordered resource release

See Also
--------
pressurecal.util.logging : Logging configuration
pressurecal.util.save : Result saving
pressurecal.util.list_gen : Pressure profile generation
"""

from .defaults import (
    CONFIG_DIR,
    DEFAULT_INSTRUMENT_HOST,
    DEFAULT_INSTRUMENT_PORT,
    DEFAULT_LOGLEVEL,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    SINGLE_LINE_ERR_LOG,
    TEST_LOGLEVEL,
)
from .list_gen import gen_decreasing_steps, gen_increasing_steps
from .logging import (
    clear_log,
    format_error_response,
    get_log_filename,
    log_default_path,
    shutdown_log,
    start_log,
)
from .save import ResultSaver, load_result, save_result
from .shutdown import ShutdownSequence
