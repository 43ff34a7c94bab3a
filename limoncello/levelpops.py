import enum
import functools
import typing as t
import warnings
from dataclasses import dataclass, asdict

import numpy as np
import numpy.typing as npt
import polars as pl

from .config import log, RunConfig
from .errors import ConvergenceFailure
from .grid import Grid, LineCoefficients
from .moldata import BlendInfo
from .parallel import WorkerPool
from .photon import PhotonBudgetPolicy, estimate_radiation
from .stateq import AcceleratedRadiationField, PopulationUpdate, solve_vertex


class ConvergenceState(enum.Enum):
    UNCONVERGED = "unconverged"
    ITERATING = "iterating"
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass(frozen=True)
class SweepStatistics:
    iteration: int
    converged_fraction: float
    median_change: float
    max_change: float
    n_fallback: int
    mean_photons: float


VertexResult = t.Tuple[int, t.List[PopulationUpdate], int]


def fractional_change(
        old: npt.NDArray[np.float64], new: npt.NDArray[np.float64], minpop: float
) -> npt.NDArray[np.float64]:
    """Per-row maximum of ``|new - old| / new`` over populations above ``minpop``; zero for rows with none."""
    significant = new > minpop
    with np.errstate(divide="ignore", invalid="ignore"):
        rel = np.where(significant, np.abs(new - old) / new, 0.0)
    return rel.max(axis=1) if rel.ndim == 2 else rel.max()


class ConvergenceDriver:
    """
    Outer (Jacobi) iteration over the non-sink vertices.

    Each sweep freezes the line coefficients of every vertex, runs the radiation estimator and the statistical
    equilibrium solver for every active vertex in parallel, and only commits the new populations once every vertex is
    done. The run is converged once more than ``goal`` percent of the active vertices changed by less than ``fixset``
    for ``stability_window`` consecutive sweeps.
    """

    def __init__(
            self,
            grid: Grid,
            config: RunConfig | None = None,
            blend_info: BlendInfo | None = None,
            budget: PhotonBudgetPolicy | None = None,
    ):
        self.grid = grid
        self.config = config if config is not None else grid.config
        self.blends = blend_info.flatten(grid.line_offsets) if blend_info else None
        self.budget = budget if budget is not None else PhotonBudgetPolicy(
            growth=self.config.photon_growth, max_photons=self.config.max_photons
        )
        self.state = ConvergenceState.UNCONVERGED
        self.n_iter = 0
        self._stable_sweeps = 0
        self._stats: t.List[SweepStatistics] = []

    @property
    def history(self) -> pl.DataFrame:
        if len(self._stats) == 0:
            return pl.DataFrame(schema={
                "iteration": pl.Int64, "converged_fraction": pl.Float64, "median_change": pl.Float64,
                "max_change": pl.Float64, "n_fallback": pl.Int64, "mean_photons": pl.Float64,
            })
        return pl.DataFrame([asdict(stat) for stat in self._stats])

    def active_vertices(self) -> npt.NDArray[np.int64]:
        frozen = self.grid.mesh.sink.copy()
        if self.config.freeze_restored:
            frozen |= self.grid.restored
        return np.nonzero(~frozen)[0]

    def _solve_chunk(
            self, chunk: npt.NDArray[np.int64], rng: np.random.Generator, coeffs: LineCoefficients
    ) -> t.List[VertexResult]:
        grid = self.grid
        backgrounds = [mol.background(self.config.tcmb) for mol in grid.molecules]
        results = []
        for vertex in chunk:
            vertex = int(vertex)
            sample = estimate_radiation(grid, coeffs, vertex, rng, blends=self.blends, config=self.config)
            updates = []
            for s, (mol, sp) in enumerate(zip(grid.molecules, grid.species)):
                field = AcceleratedRadiationField(
                    mol=mol,
                    species=s,
                    phot=sample.phot,
                    vfac_loc=sample.vfac_loc,
                    half_ds=sample.half_first_ds,
                    dv_rel=sample.dv_rel,
                    local_jcoef=coeffs.jcoef[vertex],
                    local_acoef=coeffs.acoef[vertex],
                    knu=sp.knu[vertex],
                    dust=sp.dust[vertex],
                    binv=coeffs.binv[vertex],
                    nmol=float(sp.nmol[vertex]),
                    line_offsets=coeffs.offsets,
                    blends=self.blends,
                    background=backgrounds[s],
                    taylor_cutoff=self.config.taylor_cutoff,
                )
                updates.append(
                    solve_vertex(mol, grid.conditions(vertex, s), field, sp.pops[vertex], self.config, vertex=vertex)
                )
            results.append((vertex, updates, sample.n_rays))
        return results

    def step(self, pool: WorkerPool) -> SweepStatistics:
        """One sweep over the active vertices."""
        grid = self.grid
        self.state = ConvergenceState.ITERATING
        self.n_iter += 1
        active = self.active_vertices()

        coeffs = grid.line_coefficients()
        new_pops = [sp.pops.copy() for sp in grid.species]
        chunk_results = pool.map_partitioned(functools.partial(self._solve_chunk, coeffs=coeffs), active)

        n_fallback = 0
        n_rays = []
        for chunk in chunk_results:
            for vertex, updates, rays in chunk:
                n_rays.append(rays)
                for s, update in enumerate(updates):
                    new_pops[s][vertex] = update.pops
                    n_fallback += int(update.fallback)

        change = np.zeros(len(active))
        for sp, pops in zip(grid.species, new_pops):
            change = np.maximum(change, fractional_change(sp.pops[active], pops[active], self.config.minpop))
            sp.pops[:] = pops

        stable = change < self.config.fixset
        grid.conv[active] = stable
        grid.nphot[active] = self.budget.next_budget(grid.nphot[active], stable)

        converged_fraction = 100.0 * float(stable.mean()) if len(active) > 0 else 100.0
        if converged_fraction > self.config.goal or converged_fraction == 100.0:
            self._stable_sweeps += 1
        else:
            self._stable_sweeps = 0

        stats = SweepStatistics(
            iteration=self.n_iter,
            converged_fraction=converged_fraction,
            median_change=float(np.median(change)) if len(active) > 0 else 0.0,
            max_change=float(change.max()) if len(active) > 0 else 0.0,
            n_fallback=n_fallback,
            mean_photons=float(np.mean(n_rays)) if n_rays else 0.0,
        )
        self._stats.append(stats)
        log.info(
            f"[I{self.n_iter}] {converged_fraction:.1f}% of {len(active)} vertices converged "
            f"(median change {stats.median_change:.3e}, max {stats.max_change:.3e}, "
            f"{n_fallback} LTE fallbacks, {stats.mean_photons:.0f} rays per vertex)."
        )
        if n_fallback > 0:
            log.warning(f"[I{self.n_iter}] {n_fallback} vertex solutions fell back to LTE.")
        return stats

    def run(self, pool: WorkerPool | None = None) -> ConvergenceState:
        """Iterate until converged or out of iterations."""
        if self.config.lte_only:
            log.info("LTE-only run: populations kept at LTE.")
            self.state = ConvergenceState.CONVERGED
            return self.state
        if len(self.active_vertices()) == 0:
            log.info("No vertices to solve.")
            self.state = ConvergenceState.CONVERGED
            return self.state

        own_pool = pool is None
        if own_pool:
            pool = WorkerPool(self.config.n_threads, self.config.seed)
        try:
            while self.n_iter < self.config.n_solve_iters:
                self.step(pool)
                if self._stable_sweeps >= self.config.stability_window:
                    self.state = ConvergenceState.CONVERGED
                    log.info(f"[I{self.n_iter}] Converged.")
                    return self.state
        finally:
            if own_pool:
                pool.shutdown()

        self.state = ConvergenceState.FAILED
        message = (
            f"Populations did not converge within {self.config.n_solve_iters} iterations "
            f"({self._stats[-1].converged_fraction if self._stats else 0.0:.1f}% of vertices stable)."
        )
        log.warning(message)
        warnings.warn(message, ConvergenceFailure)
        return self.state
