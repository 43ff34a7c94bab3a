import numpy as np
import numpy.typing as npt
from astropy import units as u
from astropy import constants as ac

# Constants with units:
ac_h_c_on_kB = ac.h * ac.c / ac.k_B
ac_h_c_on_4_pi_sqrt_pi = ac.h * ac.c / (4 * np.pi * np.sqrt(np.pi))

# Dimensionless (SI) versions for numba
AMU = ac.u.to(u.kg).value
CLIGHT = ac.c.to(u.m / u.s).value
HPLANCK = ac.h.to(u.J * u.s).value
KBOLTZ = ac.k_B.to(u.J / u.K).value
PC = ac.pc.to(u.m).value
HPIP = ac_h_c_on_4_pi_sqrt_pi.to(u.J * u.m).value
# Level energies are tabulated in wavenumbers, hence cm K.
HCKB = ac_h_c_on_kB.to(u.cm * u.K).value

DIM = 3


def planck(freq: npt.ArrayLike, temperature: float) -> npt.NDArray[np.float64]:
    """
    Planck intensity :math:`B_\\nu(T)` in W m^-2 Hz^-1 sr^-1, zero for non-positive temperatures.

    .. math::
        B_\\nu(T) = \\frac{2 h \\nu^{3}}{c^{2}} \\frac{1}{e^{h\\nu / k T} - 1}
    """
    freq = np.asarray(freq, dtype=np.float64)
    if temperature <= 0:
        return np.zeros_like(freq)
    with np.errstate(over="ignore"):
        return 2.0 * HPLANCK * freq ** 3 / CLIGHT ** 2 / np.expm1(HPLANCK * freq / (KBOLTZ * temperature))
