import math
import typing as t

import numba
import numpy as np
import numpy.typing as npt

FAST_EXP_MAX_TAYLOR = 3  # don't increase this to >8 without extending _ONE_OVER_I
FAST_EXP_NUM_BITS = 8
# Exponents 2^-5 ... 2^4 are tabulated: below that the Taylor series is used, above it exp(-x) < 1e-13.
LOWEST_EXPONENT = -5
NUM_EXPONENTS_USED = 10
_IEEE754_NUM_MANT_BITS = 23

_ONE_OVER_I = np.array([0.0] + [1.0 / i for i in range(1, 9)])


def calc_table_entries(
        lowest_exponent: int = LOWEST_EXPONENT,
        num_exponents: int = NUM_EXPONENTS_USED,
        num_bits: int = FAST_EXP_NUM_BITS,
) -> t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """
    Build the lookup tables behind :func:`fast_exp`.

    A single-precision argument is written as :math:`x = 2^{E}(1 + f)` with the 23 mantissa bits of :math:`f` split
    into a leading field of ``23 - 2 * num_bits`` bits and two trailing fields of ``num_bits`` bits each, so that

    .. math::
        e^{-x} = e^{-2^{E}(1 + j_0 2^{-7})} \\, e^{-2^{E} j_1 2^{-15}} \\, e^{-2^{E} j_2 2^{-23}}.

    Parameters
    ----------
    lowest_exponent : int
        Smallest binary exponent :math:`E` in the tables.
    num_exponents : int
        Number of consecutive exponents tabulated.
    num_bits : int
        Width of the two trailing mantissa fields.

    Returns
    -------
    table_2d : ndarray, shape (2^(23 - 2 num_bits), num_exponents)
        Factor for the leading mantissa field (including the implicit 1).
    table_3d : ndarray, shape (2^num_bits, 2, num_exponents)
        Factors for the two trailing mantissa fields.
    """
    lead_bits = _IEEE754_NUM_MANT_BITS - 2 * num_bits
    scales = 2.0 ** (lowest_exponent + np.arange(num_exponents))
    j_lead = np.arange(2 ** lead_bits)
    j_trail = np.arange(2 ** num_bits)

    table_2d = np.exp(-scales[None, :] * (1.0 + j_lead[:, None] / 2.0 ** lead_bits))
    table_3d = np.empty((2 ** num_bits, 2, num_exponents))
    table_3d[:, 0, :] = np.exp(-scales[None, :] * j_trail[:, None] / 2.0 ** (lead_bits + num_bits))
    table_3d[:, 1, :] = np.exp(-scales[None, :] * j_trail[:, None] / 2.0 ** _IEEE754_NUM_MANT_BITS)
    return table_2d, table_3d


EXP_TABLE_2D, EXP_TABLE_3D = calc_table_entries()
EXP_TABLE_2D.setflags(write=False)
EXP_TABLE_3D.setflags(write=False)


@numba.njit(cache=True, nogil=True)
def taylor(max_order: int, x: float) -> float:
    """Horner evaluation of the power series of exp(-x) to ``max_order``."""
    result = 1.0
    for i in range(max_order, 0, -1):
        result = 1.0 - x * result * _ONE_OVER_I[i]
    return result


@numba.njit(cache=True, nogil=True)
def fast_exp(negarg: float) -> float:
    """
    Approximate :math:`e^{-x}` by table lookup on the single-precision representation of ``negarg``.

    Negative arguments are passed through to the exact exponential and ``fast_exp(0) == 1``.
    """
    if negarg < 0.0:
        return math.exp(-negarg)
    if negarg == 0.0:
        return 1.0

    mantissa, exponent = math.frexp(float(np.float32(negarg)))
    # frexp gives mantissa in [0.5, 1): x = 2^(exponent - 1) * (2 * mantissa).
    level = exponent - 1 - LOWEST_EXPONENT
    if level < 0:
        return taylor(FAST_EXP_MAX_TAYLOR, negarg)
    elif level >= NUM_EXPONENTS_USED:
        return 0.0

    bits = int((2.0 * mantissa - 1.0) * 8388608.0)
    j0 = bits >> 16
    j1 = (bits >> 8) & 0xFF
    j2 = bits & 0xFF
    return EXP_TABLE_2D[j0, level] * EXP_TABLE_3D[j1, 0, level] * EXP_TABLE_3D[j2, 1, level]


@numba.njit(cache=True, nogil=True)
def exp_neg(x: float, use_fast: bool) -> float:
    if use_fast:
        return fast_exp(x)
    return math.exp(-x)


@numba.njit(cache=True, nogil=True)
def source_fn(dtau: float, taylor_cutoff: float) -> t.Tuple[float, float]:
    """
    Return ``((1 - exp(-dtau)) / dtau, exp(-dtau))``.

    For ``|dtau| < taylor_cutoff`` the first term is its second-order power series, which avoids the cancellation in
    ``1 - exp(-dtau)``.
    """
    if abs(dtau) < taylor_cutoff:
        remnant_snu = 1.0 - dtau * (1.0 - dtau * (1.0 / 3.0)) * 0.5
        exp_dtau = 1.0 - dtau * remnant_snu
    else:
        exp_dtau = math.exp(-dtau)
        remnant_snu = (1.0 - exp_dtau) / dtau
    return remnant_snu, exp_dtau


@numba.njit(cache=True, nogil=True)
def gaussline(v: float, one_on_sigma: float, use_fast: bool) -> float:
    """Unnormalised Gaussian line profile at velocity offset ``v``."""
    val = v * v * one_on_sigma * one_on_sigma
    return exp_neg(val, use_fast)
