"""
Tests for the table-driven exponential and the source-function helpers.
"""

import math

import numpy as np
import pytest

from limoncello.fastexp import (
    EXP_TABLE_2D, EXP_TABLE_3D, FAST_EXP_NUM_BITS, LOWEST_EXPONENT, NUM_EXPONENTS_USED, calc_table_entries, exp_neg,
    fast_exp, gaussline, source_fn, taylor,
)
from limoncello.stateq import source_fn_array


def test_table_shapes():
    """The tables cover the leading and the two trailing mantissa fields for every exponent."""
    table_2d, table_3d = calc_table_entries()
    assert table_2d.shape == (2 ** (23 - 2 * FAST_EXP_NUM_BITS), NUM_EXPONENTS_USED)
    assert table_3d.shape == (2 ** FAST_EXP_NUM_BITS, 2, NUM_EXPONENTS_USED)
    assert np.all(table_3d[0] == 1.0)
    assert not EXP_TABLE_2D.flags.writeable
    assert not EXP_TABLE_3D.flags.writeable


def test_fast_exp_special_values():
    assert fast_exp(0.0) == 1.0
    assert math.isclose(fast_exp(-2.0), math.exp(2.0))
    assert fast_exp(2.0 ** (LOWEST_EXPONENT + NUM_EXPONENTS_USED)) == 0.0
    assert fast_exp(1.0e3) == 0.0


@pytest.mark.parametrize("x", np.concatenate([np.geomspace(1e-8, 0.031, 25), np.linspace(0.0313, 31.9, 200)]))
def test_fast_exp_accuracy(x):
    """Within both the power series and the table ranges the relative error stays below 1e-4."""
    assert fast_exp(x) == pytest.approx(math.exp(-x), rel=1e-4)


def test_exp_neg_switch():
    assert exp_neg(1.5, False) == math.exp(-1.5)
    assert exp_neg(1.5, True) == pytest.approx(math.exp(-1.5), rel=1e-6)


def test_taylor_orders():
    assert taylor(1, 0.1) == pytest.approx(0.9)
    assert taylor(3, 0.01) == pytest.approx(math.exp(-0.01), rel=1e-9)


def test_source_fn_branches_agree():
    """The power series and the closed form meet smoothly at the cut-off."""
    cutoff = 0.03
    below = source_fn(cutoff * 0.999, cutoff)
    above = source_fn(cutoff * 1.001, cutoff)
    assert below[0] == pytest.approx(above[0], rel=1e-4)
    assert below[1] == pytest.approx(above[1], rel=1e-4)
    remnant, exp_dtau = source_fn(0.0, cutoff)
    assert remnant == 1.0 and exp_dtau == 1.0


def test_source_fn_negative_dtau():
    """Masing half-edges amplify instead of attenuate."""
    remnant, exp_dtau = source_fn(-2.0, 0.03)
    assert exp_dtau == pytest.approx(math.exp(2.0))
    assert remnant == pytest.approx((1.0 - math.exp(2.0)) / -2.0)


def test_source_fn_array_matches_kernel():
    dtau = np.array([-1.0, -1e-3, 0.0, 1e-4, 0.02, 0.5, 10.0])
    remnant, exp_dtau = source_fn_array(dtau, 0.03)
    for d, r, e in zip(dtau, remnant, exp_dtau):
        assert (r, e) == pytest.approx(source_fn(d, 0.03))


def test_gaussline():
    binv = 1.0 / 300.0
    assert gaussline(0.0, binv, True) == 1.0
    assert gaussline(300.0, binv, False) == pytest.approx(math.exp(-1.0))
    assert gaussline(-300.0, binv, True) == pytest.approx(math.exp(-1.0), rel=1e-5)
