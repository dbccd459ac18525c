import pytest

from pressurecal.util import gen_decreasing_steps, gen_increasing_steps


@pytest.mark.parametrize(
    "max_pressure, expected",
    [
        (300, [0, 25, 50, 75, 100, 150, 200, 250, 300]),
        (100, [0, 25, 50, 75, 100]),
        (60, [0, 25, 50]),
        (0, [0]),
    ],
)
def test_gen_increasing_steps(max_pressure, expected):
    assert gen_increasing_steps(max_pressure) == expected


@pytest.mark.parametrize(
    "max_pressure, expected",
    [
        (300, [300, 250, 200, 150, 100, 75, 50, 25, 0]),
        (100, [100, 75, 50, 25, 0]),
        (50, [50, 25, 0]),
        (0, [0]),
    ],
)
def test_gen_decreasing_steps(max_pressure, expected):
    assert gen_decreasing_steps(max_pressure) == expected


def test_negative_max_pressure():
    with pytest.raises(ValueError):
        gen_increasing_steps(-1)
    with pytest.raises(ValueError):
        gen_decreasing_steps(-1)
