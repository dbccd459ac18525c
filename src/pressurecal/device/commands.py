"""Remote-control vocabulary of the pressure reference instrument.

Commands are ASCII lines. A command expects exactly one reply line iff it is
a query, i.e. it contains ``?``; everything else is fire-and-forget.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable

from pressurecal.util.defaults import DEFAULT_INSTRUMENT_TOLERANCE

IDENTIFY = "*IDN?"
CLEAR_STATUS = "*CLS"

OUTPUT_STATE = "OUTPut:STATe?"
OUTPUT_ON = "OUTPut:STATe ON"
OUTPUT_OFF = "OUTPut:STATe OFF"

OUTPUT_MODE = "OUTPut:PRESsure:MODE?"
OUTPUT_MODE_CONTROL = "OUTPut:PRESsure:MODE CONTrol"
OUTPUT_MODE_VENT = "OUTPut:PRESsure:MODE VENT"
OUTPUT_MODE_MEASURE = "OUTPut:PRESsure:MODE MEASure"

STATIC_MODE = "SOURce:PRESsure:STATic?"
STATIC_MODE_OFF = "SOURce:PRESsure:STATic 0"

TOLERANCE = "SOURce:PRESsure:TOLerance?"
TOLERANCE_SET = "SOURce:PRESsure:TOLerance"  # + " <value>"

SET_PRESSURE = "SOURce:PRESsure:LEVel:IMMediate:AMPLitude"  # + " <value>"
MEASURE_PRESSURE = "MEASure:PRESsure?"
FETCH_PRESSURE = "FETCh:PRESsure?"

STATUS_OPERATION = "STATus:OPERation:CONDition?"
STATUS_QUESTIONABLE = "STATus:QUEStionable:CONDition?"
SYSTEM_ERROR = "SYSTem:ERRor?"
PRESSURE_UNIT = "UNIT:PRESsure?"

# STATus:OPERation:CONDition? reads this once the setpoint is reached & stable
SETTLED_STATUS = 16

SHUTDOWN_SEQUENCE = (OUTPUT_MODE_VENT, OUTPUT_OFF)


def expects_response(command: str) -> bool:
    return "?" in command


def is_no_error(response: str) -> bool:
    """True for the empty-error-queue reply to SYSTem:ERRor?, e.g. '0,"No error"'."""
    return response.strip().lstrip("+").startswith("0,")


@dataclass(frozen=True)
class Command:
    text: str
    expects_response: bool

    @classmethod
    def parse(cls, text: str) -> Command:
        text = text.strip()
        return cls(text=text, expects_response=expects_response(text))


def set_pressure_command(value: float) -> str:
    return f"{SET_PRESSURE} {_fmt(value)}"


def set_tolerance_command(value: float) -> str:
    return f"{TOLERANCE_SET} {_fmt(value)}"


def _fmt(value: float) -> str:
    # 100.0 -> "100", 0.25 -> "0.25"
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def parse_float(response: str | None) -> float | None:
    """Parse a numeric reply, None if it isn't one."""
    if response is None:
        return None
    try:
        value = float(response.strip())
    except ValueError:
        return None
    if math.isnan(value):
        return None
    return value


# ----------------------------------------------------------------------------------
# prerequisites: settings that must hold before any pressure is commanded
# ----------------------------------------------------------------------------------


@dataclass(frozen=True)
class PrerequisiteCheck:
    name: str
    check_command: str
    enforce_command: str
    validate: Callable[[str], bool]
    expected_value: str


def _is_output_on(response: str) -> bool:
    return response.strip() == "1"


def _is_control_mode(response: str) -> bool:
    return response.strip().upper() == "CONTROL"


def _is_static_off(response: str) -> bool:
    return response.strip() == "0"


def _is_tolerance(response: str, tolerance: float = DEFAULT_INSTRUMENT_TOLERANCE):
    value = parse_float(response)
    return value is not None and math.isclose(value, tolerance, abs_tol=1e-9)


PREREQUISITE_CHECKS: tuple[PrerequisiteCheck, ...] = (
    PrerequisiteCheck(
        name="Output State",
        check_command=OUTPUT_STATE,
        enforce_command=OUTPUT_ON,
        validate=_is_output_on,
        expected_value="1",
    ),
    PrerequisiteCheck(
        name="Output Mode",
        check_command=OUTPUT_MODE,
        enforce_command=OUTPUT_MODE_CONTROL,
        validate=_is_control_mode,
        expected_value="CONTROL",
    ),
    PrerequisiteCheck(
        name="Static Mode",
        check_command=STATIC_MODE,
        enforce_command=STATIC_MODE_OFF,
        validate=_is_static_off,
        expected_value="0",
    ),
    PrerequisiteCheck(
        name="Tolerance",
        check_command=TOLERANCE,
        enforce_command=set_tolerance_command(DEFAULT_INSTRUMENT_TOLERANCE),
        validate=_is_tolerance,
        expected_value=str(DEFAULT_INSTRUMENT_TOLERANCE),
    ),
)


def prerequisite_checks(
    tolerance: float = DEFAULT_INSTRUMENT_TOLERANCE,
) -> tuple[PrerequisiteCheck, ...]:
    """The prerequisite table, with the tolerance entry set to `tolerance`."""
    if math.isclose(tolerance, DEFAULT_INSTRUMENT_TOLERANCE):
        return PREREQUISITE_CHECKS
    return PREREQUISITE_CHECKS[:-1] + (
        PrerequisiteCheck(
            name="Tolerance",
            check_command=TOLERANCE,
            enforce_command=set_tolerance_command(tolerance),
            validate=lambda resp: _is_tolerance(resp, tolerance),
            expected_value=str(tolerance),
        ),
    )
