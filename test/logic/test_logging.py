import os

from loguru import logger

from pressurecal.util import clear_log, get_log_filename, shutdown_log, start_log


def test_log_to_file(tmp_path):
    path = str(tmp_path / "pressurecal.log")
    start_log(log_to_file=True, log_path=path, log_level="DEBUG")
    logger.debug("calibration log line")
    assert get_log_filename() == path
    shutdown_log()  # flushes the enqueued sink
    with open(path) as f:
        assert "calibration log line" in f.read()

    clear_log(path)
    assert not os.path.exists(path)
    clear_log(path)  # missing file is fine


def test_no_file_sink():
    start_log(log_to_file=False, log_to_stdout=False, clear_prev=False)
    assert get_log_filename() == ""
    shutdown_log()
