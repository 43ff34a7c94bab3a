import abc
import typing as t
from dataclasses import dataclass

import numpy as np
import numpy.typing as npt
from scipy.linalg import lu_factor, lu_solve

from .config import log, RunConfig, _TOL, _MAXITER
from .constants import HCKB, HPIP
from .errors import NumericalInstabilityError
from .moldata import MolecularData

# Lower bound on inner iterations before the change criterion is checked.
_MIN_INNER_ITER = 5


@dataclass(frozen=True)
class VertexConditions:
    """Local state the rate equations of one species at one vertex depend on."""
    temperature: float
    partner_dens: npt.NDArray[np.float64]
    t_binlow: npt.NDArray[np.int64]
    interp_coeff: npt.NDArray[np.float64]


@dataclass(frozen=True)
class PopulationUpdate:
    pops: npt.NDArray[np.float64]
    converged: bool
    fallback: bool
    n_iter: int


def lte_populations(mol: MolecularData, temperature: float) -> npt.NDArray[np.float64]:
    """
    Boltzmann level populations (fractions summing to 1).

    .. math::
        n_i = \\frac{g_i e^{-h c E_i / k T}}{\\sum_j g_j e^{-h c E_j / k T}}

    A non-positive temperature puts everything in the lowest level.
    """
    energies = mol.energies - mol.energies.min()
    if temperature <= 0:
        pops = np.where(energies == 0, mol.weights, 0.0)
    else:
        pops = mol.weights * np.exp(-HCKB * energies / temperature)
    return pops / pops.sum()


def collision_interpolation(temperatures: npt.NDArray[np.float64], temperature: float) -> t.Tuple[int, float]:
    """
    Lower bin and linear coefficient of ``temperature`` on a rate table's temperature grid.

    Outside the grid the nearest tabulated value is used: ``(0, 0.0)`` below and ``(ntemp - 2, 1.0)`` above.
    """
    ntemp = len(temperatures)
    if ntemp == 1 or temperature <= temperatures[0]:
        return 0, 0.0
    if temperature >= temperatures[-1]:
        return ntemp - 2, 1.0
    t_binlow = int(np.searchsorted(temperatures, temperature, side="right")) - 1
    coeff = (temperature - temperatures[t_binlow]) / (temperatures[t_binlow + 1] - temperatures[t_binlow])
    return t_binlow, float(coeff)


def rate_matrix(
        mol: MolecularData, conditions: VertexConditions, jbar: npt.NDArray[np.float64]
) -> npt.NDArray[np.float64]:
    """
    Total transition rates, ``R[i, j]`` being the rate (s^-1) from level ``i`` to level ``j``.

    Collisional downward rates are interpolated in temperature and scaled by the partner density; upward rates follow
    from detailed balance at the kinetic temperature. Radiative rates are :math:`A_{ul} + B_{ul} \\bar{J}` downwards and
    :math:`B_{lu} \\bar{J}` upwards.
    """
    rates = np.zeros((mol.nlev, mol.nlev))
    temperature = conditions.temperature
    for p, partner in enumerate(mol.partners):
        table = partner.down_rates
        lo = conditions.t_binlow[p]
        if table.shape[1] == 1:
            down = table[:, 0]
        else:
            down = table[:, lo] + conditions.interp_coeff[p] * (table[:, lo + 1] - table[:, lo])
        down = down * conditions.partner_dens[p]
        if temperature > 0:
            boltz = np.exp(-HCKB * (mol.energies[partner.upper] - mol.energies[partner.lower]) / temperature)
            up = down * mol.weights[partner.upper] / mol.weights[partner.lower] * boltz
        else:
            up = np.zeros_like(down)
        np.add.at(rates, (partner.upper, partner.lower), down)
        np.add.at(rates, (partner.lower, partner.upper), up)

    np.add.at(rates, (mol.upper, mol.lower), mol.a_einstein + mol.beinstu * jbar)
    np.add.at(rates, (mol.lower, mol.upper), mol.beinstl * jbar)
    np.fill_diagonal(rates, 0.0)
    return rates


def solve_rate_equations(
        rates: npt.NDArray[np.float64],
        pops_guess: npt.NDArray[np.float64],
        max_condition: float,
        minpop: float,
        vertex: int = -1,
) -> npt.NDArray[np.float64]:
    """
    Solve the steady-state rate equations with the populations normalised to 1.

    Levels with no rate in or out are dropped and get zero population. The equation of the most populated level in
    ``pops_guess`` is replaced by the normalisation condition.

    Raises:
        NumericalInstabilityError: the system is ill-conditioned or singular, the solution is not finite or has a
            population below ``-minpop``.
    """
    nlev = len(rates)
    active = np.nonzero((rates.sum(axis=0) + rates.sum(axis=1)) != 0)[0]
    pops = np.zeros(nlev)
    if len(active) == 0:
        return pops_guess / pops_guess.sum()
    if len(active) == 1:
        pops[active] = 1.0
        return pops

    # d n_i / dt = sum_j n_j R[j, i] - n_i sum_j R[i, j]
    y_matrix = rates.T - np.diag(rates.sum(axis=1))
    y_matrix_reduced = y_matrix[np.ix_(active, active)]
    log.debug(f"[V{vertex}] Y matrix (before row-normalisation) =\n{y_matrix_reduced}")
    y_matrix_reduced /= np.abs(y_matrix_reduced).sum(axis=1)[:, None]

    major = int(np.argmax(pops_guess[active]))
    y_matrix_reduced[major, :] = 1.0
    rhs = np.zeros(len(active))
    rhs[major] = 1.0

    condition = np.linalg.cond(y_matrix_reduced)
    if not np.isfinite(condition) or condition > max_condition:
        raise NumericalInstabilityError(f"[V{vertex}] Rate matrix condition number {condition:.3e}.", condition)

    solution = lu_solve(lu_factor(y_matrix_reduced, check_finite=False), rhs, check_finite=False)
    if not np.all(np.isfinite(solution)):
        raise NumericalInstabilityError(f"[V{vertex}] Non-finite populations {solution}.", condition)
    if np.any(solution < -minpop):
        raise NumericalInstabilityError(f"[V{vertex}] Negative populations {solution}.", condition)
    solution = np.clip(solution, 0.0, None)
    pops[active] = solution / solution.sum()
    return pops


def source_fn_array(
        dtau: npt.NDArray[np.float64], taylor_cutoff: float
) -> t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """Elementwise ``((1 - exp(-dtau)) / dtau, exp(-dtau))``, with the same power series as the scalar kernel."""
    small = np.abs(dtau) < taylor_cutoff
    safe = np.where(small, 1.0, dtau)
    exp_dtau = np.exp(-np.where(small, 0.0, dtau))
    remnant = np.where(small, 1.0 - dtau * (1.0 - dtau / 3.0) * 0.5, (1.0 - exp_dtau) / safe)
    exp_dtau = np.where(small, 1.0 - dtau * remnant, exp_dtau)
    return remnant, exp_dtau


def line_coefficient_factors(
        mol: MolecularData, pops: npt.NDArray[np.float64], binv: float, nmol: float
) -> t.Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """Line emission and absorption coefficients per line, without the profile factor."""
    factor = HPIP * binv * nmol
    jcoef = factor * pops[mol.upper] * mol.a_einstein
    acoef = factor * (pops[mol.lower] * mol.beinstl - pops[mol.upper] * mol.beinstu)
    return jcoef, acoef


class RadiationField(abc.ABC):
    @abc.abstractmethod
    def mean_intensity(self, pops: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        """Line-profile averaged mean intensity per line for the level populations ``pops``."""


class FixedRadiationField(RadiationField):
    def __init__(self, jbar: npt.ArrayLike):
        self.jbar = np.asarray(jbar, dtype=np.float64)

    def mean_intensity(self, pops: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        return self.jbar


class AcceleratedRadiationField(RadiationField):
    """
    Mean intensity from a ray sample with the emission of the first half-edge of every ray recomputed from the
    current population iterate.

    The rays carry the intensity ``phot`` arriving at the end of their first half-edge, computed with the coefficients
    of the sweep. Attenuating it through the local half-edge and adding the local emission with the populations being
    solved for makes the inner iteration converge on the local part of the coupling.

    Args:
        mol: Molecular data of the species being solved.
        species: Index of that species.
        phot: Incoming intensity per ray and global line.
        vfac_loc: Local line profile factor per ray and global line.
        half_ds: Length of the local half-edge of each ray.
        dv_rel: Velocity offset of each ray from the local gas.
        local_jcoef: Line emission coefficient of every global line at the vertex, from the sweep snapshot.
        local_acoef: Line absorption coefficient of every global line at the vertex, from the sweep snapshot.
        knu: Dust opacity at the lines of ``species``.
        dust: Dust source function at the lines of ``species``.
        binv: Inverse Doppler width of every species at the vertex.
        nmol: Molecular density of ``species`` at the vertex.
        line_offsets: Global index of the first line of each species.
        blends: ``(ptr, blend_line, delta_v)`` in global line numbering, or None.
        background: Background intensity per line of ``species``.
        taylor_cutoff: See :class:`~limoncello.config.RunConfig`.
    """

    def __init__(
            self,
            mol: MolecularData,
            species: int,
            phot: npt.NDArray[np.float64],
            vfac_loc: npt.NDArray[np.float64],
            half_ds: npt.NDArray[np.float64],
            dv_rel: npt.NDArray[np.float64],
            local_jcoef: npt.NDArray[np.float64],
            local_acoef: npt.NDArray[np.float64],
            knu: npt.NDArray[np.float64],
            dust: npt.NDArray[np.float64],
            binv: npt.NDArray[np.float64],
            nmol: float,
            line_offsets: npt.NDArray[np.int64],
            blends: t.Tuple[npt.NDArray[np.int64], npt.NDArray[np.int64], npt.NDArray[np.float64]] | None,
            background: npt.NDArray[np.float64],
            taylor_cutoff: float,
    ):
        self.mol = mol
        self.species = species
        start, stop = int(line_offsets[species]), int(line_offsets[species + 1])
        self._start = start
        self.phot = phot[:, start:stop]
        self.vfac_loc = vfac_loc[:, start:stop]
        self.half_ds = half_ds
        self.knu = knu
        self.dust = dust
        self.binv = binv[species]
        self.nmol = nmol
        self.local_jcoef = local_jcoef
        self.local_acoef = local_acoef
        self.background = background
        self.taylor_cutoff = taylor_cutoff
        self.vsum = self.vfac_loc.sum(axis=0)

        line_species = np.repeat(np.arange(len(line_offsets) - 1), np.diff(line_offsets))
        # (own line, global blended line, own-species flag, profile factor per ray)
        self.blend_terms = []
        if blends is not None:
            ptr, blend_line, delta_v = blends
            for line in range(mol.nline):
                g = start + line
                for k in range(ptr[g], ptr[g + 1]):
                    b = blend_line[k]
                    b_binv = binv[line_species[b]]
                    vfac = np.exp(-((dv_rel + delta_v[k]) * b_binv) ** 2)
                    self.blend_terms.append((line, b, start <= b < stop, vfac))

    def mean_intensity(self, pops: npt.NDArray[np.float64]) -> npt.NDArray[np.float64]:
        jcoef, acoef = line_coefficient_factors(self.mol, pops, self.binv, self.nmol)
        jnu = self.vfac_loc * jcoef + self.dust * self.knu
        alpha = self.vfac_loc * acoef + self.knu
        for line, b, same_species, vfac in self.blend_terms:
            # Blends within the species follow the iterate, other species stay at the sweep snapshot.
            if same_species:
                jnu[:, line] += vfac * jcoef[b - self._start]
                alpha[:, line] += vfac * acoef[b - self._start]
            else:
                jnu[:, line] += vfac * self.local_jcoef[b]
                alpha[:, line] += vfac * self.local_acoef[b]

        dtau = alpha * self.half_ds[:, None]
        remnant, exp_dtau = source_fn_array(dtau, self.taylor_cutoff)
        weighted = self.vfac_loc * (exp_dtau * self.phot + remnant * jnu * self.half_ds[:, None])
        jbar = np.where(self.vsum > 0, weighted.sum(axis=0) / np.where(self.vsum > 0, self.vsum, 1.0),
                        self.background)
        return jbar


def solve_vertex(
        mol: MolecularData,
        conditions: VertexConditions,
        field: RadiationField,
        pops: npt.NDArray[np.float64],
        config: RunConfig,
        vertex: int = -1,
) -> PopulationUpdate:
    """
    Iterate the statistical equilibrium of one species at one vertex against a radiation field.

    Runs at least ``_MIN_INNER_ITER`` iterations and stops when the largest fractional change of the populations
    above ``minpop`` falls under ``_TOL``, or after ``_MAXITER`` iterations. A numerically unstable system falls back
    to LTE populations for this vertex.
    """
    pops = np.array(pops, dtype=np.float64)
    converged = False
    n_iter = 0
    for n_iter in range(1, _MAXITER + 1):
        jbar = field.mean_intensity(pops)
        rates = rate_matrix(mol, conditions, jbar)
        try:
            new_pops = solve_rate_equations(rates, pops, config.max_condition, config.minpop, vertex=vertex)
        except NumericalInstabilityError as e:
            log.warning(f"{e} {mol.name}: falling back to LTE at {conditions.temperature} K.")
            return PopulationUpdate(
                pops=lte_populations(mol, conditions.temperature), converged=False, fallback=True, n_iter=n_iter
            )
        significant = new_pops > config.minpop
        diff = np.max(np.abs(new_pops[significant] - pops[significant]) / new_pops[significant]) \
            if np.any(significant) else 0.0
        pops = new_pops
        if n_iter >= _MIN_INNER_ITER and diff < _TOL:
            converged = True
            break
    return PopulationUpdate(pops=pops, converged=converged, fallback=False, n_iter=n_iter)
