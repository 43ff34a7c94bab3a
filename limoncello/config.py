import logging
import os
import pathlib
import typing as t
from dataclasses import dataclass

(pathlib.Path(os.getcwd()) / "./outputs").resolve().mkdir(exist_ok=True)
output_dir = (pathlib.Path(os.getcwd()) / "./outputs").resolve()

log = logging.getLogger("limoncello")
log.setLevel(logging.INFO)

# stream_handler = logging.StreamHandler()
# stream_formatter = logging.Formatter("%(asctime)s [%(levelname)s]  %(message)s")
# stream_handler.setFormatter(stream_formatter)
# log.addHandler(stream_handler)

file_handler = logging.FileHandler(
    filename=(output_dir / "limoncello.log").resolve(), encoding="utf-8", mode="a"
)
file_formatter = logging.Formatter("%(asctime)s [%(threadName)-12.12s] [%(levelname)-5.5s]  %(message)s")
file_handler.setFormatter(file_formatter)
log.addHandler(file_handler)

log.info(f"Writing outputs to {output_dir}.")

_DEFAULT_NUM_THREADS = min(os.cpu_count() or 1, 20)

# Dust polarisation fraction.
_MAXP = 0.15
_NITERATIONS = 16
# Per-vertex photon budget cap; memory grows linearly with it.
_MAX_PHOT = 10000
_ININPHOT = 9
_MINPOP = 1.0e-6
_TOL = 1.0e-6
_MAXITER = 50
_GOAL = 50
_FIXSET = 1.0e-6
# m/s
_MAX_BLEND_DELTA_V = 1.0e4
_N_RAN_PER_SEGMENT = 3
_MAX_N_COLL_PART = 7


@dataclass
class RunConfig:
    """
    Tunables for a single run. Defaults follow the module-level constants above.

    Parameters
    ----------
    tcmb : float
        Temperature of the background radiation field in K. Zero or negative disables the background.
    n_threads : int
        Number of worker threads for the population sweeps and for ray tracing.
    seed : int
        Root seed for the per-worker random streams. Results are reproducible for a fixed seed and thread count.
    lte_only : bool
        Skip the non-LTE iteration and keep the LTE populations.
    blend : bool
        Treat overlapping lines jointly.
    polarization : bool
        Compute Stokes I, Q, U of the dust continuum in continuum images that do not set their own
        ``polarization``.
    n_solve_iters : int
        Maximum number of outer (driver) iterations.
    goal : float
        Percentage of non-sink vertices that must be stable for a sweep to count towards convergence.
    fixset : float
        Fractional population change under which a vertex counts as stable.
    stability_window : int
        Number of consecutive sweeps meeting ``goal`` before the run is declared converged.
    minpop : float
        Populations below this fraction are ignored when measuring changes; also the tolerance on negative solutions.
    use_fast_exp : bool
        Use the lookup-table exponential for attenuation factors.
    taylor_cutoff : float
        Optical depth under which the source-function remnant is evaluated by its power series. Computed from
        ``_TOL`` when not given.
    coll_part_ids : list of int, optional
        Collision partner id (LAMDA numbering) fed by each density returned by the model.
    nmol_weights : list of float, optional
        Weights of each density in the total density that the molecular abundance refers to.
    dust_weights : list of float, optional
        Weights of each density in the density used for the dust opacity.
    initial_photons_per_neighbour : int
        Initial ray budget per vertex neighbour.
    max_photons : int
        Upper bound on the ray budget of a vertex.
    photon_growth : float
        Factor applied to the ray budget of vertices that have not converged after a sweep.
    ray_variance_goal : float
        Relative standard error of the mean-intensity estimate at which a vertex stops issuing rays early. Zero
        always spends the full budget.
    intersection_epsilon : float
        Barycentric tolerance used when deciding whether a ray crosses a cell face.
    max_condition : float
        Largest acceptable condition number of the row-normalised rate matrix.
    max_blend_delta_v : float
        Velocity window (m/s) inside which two lines are treated as blended.
    antialias : int
        Rays per image pixel for images that do not set their own ``antialias``.
    freeze_restored : bool
        Do not re-solve vertices restored as converged from a population snapshot.
    """
    tcmb: float = 2.725
    n_threads: int = _DEFAULT_NUM_THREADS
    seed: int = 1237
    lte_only: bool = False
    blend: bool = False
    polarization: bool = False
    n_solve_iters: int = _NITERATIONS
    goal: float = _GOAL
    fixset: float = _FIXSET
    stability_window: int = 3
    minpop: float = _MINPOP
    use_fast_exp: bool = True
    taylor_cutoff: float | None = None
    coll_part_ids: t.List[int] | None = None
    nmol_weights: t.List[float] | None = None
    dust_weights: t.List[float] | None = None
    initial_photons_per_neighbour: int = _ININPHOT
    max_photons: int = _MAX_PHOT
    photon_growth: float = 2.0
    ray_variance_goal: float = 0.0
    intersection_epsilon: float = 1.0e-6
    max_condition: float = 1.0e12
    max_blend_delta_v: float = _MAX_BLEND_DELTA_V
    antialias: int = 1
    freeze_restored: bool = False

    def __post_init__(self):
        if self.taylor_cutoff is None:
            # (1 - e^-x)/x to second order has a truncation error of x^3/24.
            self.taylor_cutoff = (24.0 * _TOL) ** (1.0 / 3.0)
        if self.n_threads < 1:
            raise ValueError(f"n_threads must be at least 1 (got {self.n_threads}).")
        if self.n_solve_iters < 0:
            raise ValueError(f"n_solve_iters must be non-negative (got {self.n_solve_iters}).")
        if not 0.0 <= self.goal <= 100.0:
            raise ValueError(f"goal is a percentage; got {self.goal}.")
        if self.stability_window < 1:
            raise ValueError(f"stability_window must be at least 1 (got {self.stability_window}).")
        if self.initial_photons_per_neighbour < 1 or self.max_photons < 1:
            raise ValueError("Photon budgets must be positive.")
        if self.photon_growth < 1.0:
            raise ValueError(f"photon_growth must not shrink the budget (got {self.photon_growth}).")
        if self.antialias < 1:
            raise ValueError(f"antialias must be at least 1 (got {self.antialias}).")
        if self.coll_part_ids is not None and len(self.coll_part_ids) > _MAX_N_COLL_PART:
            raise ValueError(f"At most {_MAX_N_COLL_PART} collision partners are supported.")
