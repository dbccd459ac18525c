# -*- coding: utf-8 -*-
"""Saving calibration results.

Directory Structure
-----------------
Results are saved in a dated hierarchy:
<save_dir>/<YYYY>/<YYYY-MM>/<YYYY-MM-DD>_<project_name>/

File Naming
----------
<counter>_<device_id>.json, counter being 4 digits (0000-9999).
"""

from __future__ import annotations

import os
import sys
import time
import typing
from datetime import datetime

import numpy as np
import simplejson as json
from loguru import logger

if typing.TYPE_CHECKING:
    from pressurecal.sweep.results import CalibrationResult


def get_command_string() -> str:
    """The command line this process was started with."""
    return " ".join(sys.argv)


class NumpyEncoder(json.JSONEncoder):
    """Special json encoder for numpy types"""

    def default(self, o):
        if isinstance(o, np.integer):
            return int(o)
        if isinstance(o, np.floating):
            return float(o)
        if isinstance(o, np.ndarray):
            return o.tolist()
        return json.JSONEncoder.default(self, o)


def _get_dir(save_dir: str, project_name: str = "") -> str:
    data_root = os.path.abspath(save_dir)
    date = time.strftime("%Y/%Y-%m/%Y-%m-%d_")
    return os.path.normpath(os.path.join(data_root, date + project_name))


def _get_path(dr: str, name: str) -> str:
    """Next free numbered path <dr>/<counter>_<name> (no extension).

    Raises
    ------
    ValueError
        If the directory already holds 9999 numbered files.
    """
    counter = 0
    file_list = os.listdir(dr)
    while True:
        check_str = f"{counter:04}_"
        if not any(f.startswith(check_str) for f in file_list):
            break
        counter += 1
        if counter > 9999:
            raise ValueError("Too many files in directory")
    return os.path.join(dr, f"{counter:04}_{name}")


def _safe_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in name)


def save_result(
    result: CalibrationResult, save_dir: str, project_name: str = ""
) -> str:
    """Write one device's calibration result as JSON. Returns the file path."""
    dr = _get_dir(save_dir, project_name)
    os.makedirs(dr, exist_ok=True)
    path = _get_path(dr, _safe_name(result.device_id)) + ".json"
    payload = result.to_dict()
    payload["metadata"] = {
        "command": get_command_string(),
        "saved_at": datetime.now().isoformat(),
    }
    with open(path, "w") as f:
        json.dump(payload, f, cls=NumpyEncoder, indent=4, allow_nan=True)
    logger.info("Saved calibration result for {} to {}", result.device_id, path)
    return path


def load_result(path: str) -> dict:
    with open(path, "r") as f:
        return json.load(f)


class ResultSaver:
    """`result_sink` that saves every result it is given."""

    def __init__(self, save_dir: str, project_name: str = ""):
        self.save_dir = save_dir
        self.project_name = project_name
        self.paths: list[str] = []

    def __call__(self, result: CalibrationResult) -> str:
        path = save_result(result, self.save_dir, self.project_name)
        self.paths.append(path)
        return path
