# -*- coding: utf-8 -*-
"""Pressure profile generation.

Fine 25 steps up to 100, then coarse 50 steps above that.
"""

FINE_STEP = 25
COARSE_STEP = 50
FINE_LIMIT = 100


def gen_increasing_steps(max_pressure: int | float) -> list[float]:
    """Ascending setpoints from 0 up to (at most) `max_pressure`.

    >>> gen_increasing_steps(300)
    [0, 25, 50, 75, 100, 150, 200, 250, 300]
    """
    if max_pressure < 0:
        raise ValueError(f"max_pressure must be >= 0, got {max_pressure}")
    steps = [0]
    interval = FINE_STEP
    val = FINE_STEP
    while val <= max_pressure:
        steps.append(val)
        if val == FINE_LIMIT:
            interval = COARSE_STEP
        val += interval
    return steps


def gen_decreasing_steps(max_pressure: int | float) -> list[float]:
    """Descending setpoints from `max_pressure` down to 0.

    >>> gen_decreasing_steps(300)
    [300, 250, 200, 150, 100, 75, 50, 25, 0]
    """
    if max_pressure < 0:
        raise ValueError(f"max_pressure must be >= 0, got {max_pressure}")
    steps = [max_pressure]
    interval = FINE_STEP if max_pressure <= FINE_LIMIT else COARSE_STEP
    val = max_pressure - interval
    while val >= 0:
        steps.append(val)
        if val == FINE_LIMIT:
            interval = FINE_STEP
        val -= interval
    return steps
