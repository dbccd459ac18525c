import os

import numpy as np
import simplejson as json

from pressurecal.sweep.results import StepMeasurement, build_results
from pressurecal.types import PeripheralDevice, SweepConfig
from pressurecal.util import ResultSaver, load_result, save_result
from pressurecal.util.save import NumpyEncoder


def _result(device_id="AA:BB:CC"):
    config = SweepConfig(increasing_steps=(0, 10), decreasing_steps=(0,))
    measurements = [
        StepMeasurement(
            step_index=i,
            phase=phase,
            setpoint=setpoint,
            instrument_pressure=setpoint,
            device_readings={device_id: setpoint + 0.2},
        )
        for i, (phase, setpoint) in enumerate(
            [("increasing", 0), ("increasing", 10), ("decreasing", 0)]
        )
    ]
    device = PeripheralDevice(id=device_id, name="Sensor", address=device_id)
    (result,) = build_results("session-1", [device], measurements, config, 0.0)
    return result


def test_save_and_load(tmp_path):
    path = save_result(_result(), str(tmp_path), "bench")
    assert os.path.basename(path) == "0000_AA_BB_CC.json"
    assert os.path.basename(os.path.dirname(path)).endswith("_bench")
    assert os.path.commonpath([path, str(tmp_path)]) == str(tmp_path)

    data = load_result(path)
    assert data["device_id"] == "AA:BB:CC"
    assert data["session_id"] == "session-1"
    assert data["certification"]["certified"] is True
    assert len(data["per_step_measurements"]) == 3
    assert data["config"]["increasing_steps"] == [0, 10]
    assert "command" in data["metadata"]


def test_result_saver_numbers_files(tmp_path):
    saver = ResultSaver(str(tmp_path))
    saver(_result("A"))
    saver(_result("B"))
    assert [os.path.basename(p) for p in saver.paths] == ["0000_A.json", "0001_B.json"]
    assert all(os.path.exists(p) for p in saver.paths)


def test_numpy_encoder():
    payload = {"i": np.int64(3), "f": np.float32(0.5), "a": np.arange(3)}
    assert json.loads(json.dumps(payload, cls=NumpyEncoder)) == {
        "i": 3,
        "f": 0.5,
        "a": [0, 1, 2],
    }
